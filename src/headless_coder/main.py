from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import uvicorn

from headless_coder.adapters import get_adapter
from headless_coder.errors import CoderError
from headless_coder.events import CODER_TYPES
from headless_coder.options import RunOptions, StartOptions
from headless_coder.settings import CoderSettings, get_settings, load_provider_defaults

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="headless_coder entrypoint")
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run")
    p_run.add_argument("--config", default=None)
    p_run.add_argument("--provider", choices=sorted(CODER_TYPES.values()), required=True)
    p_run.add_argument("--prompt", required=True)
    p_run.add_argument("--stream", action="store_true")
    p_run.add_argument("--model", default=None)
    p_run.add_argument("--cwd", default=None)
    p_run.add_argument("--resume", default=None)
    p_run.add_argument("--schema", default=None, help="path to a JSON schema for structured output")
    p_run.add_argument("--sandbox", choices=["read-only", "workspace-write", "danger-full-access"], default=None)
    p_run.add_argument("--yolo", action="store_true")

    p_serve = sub.add_parser("serve")
    p_serve.add_argument("--config", default=None)
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)

    return parser


async def run_once(args: argparse.Namespace, settings: CoderSettings) -> int:
    defaults = load_provider_defaults(args.config or settings.config_path)
    coder = get_adapter(args.provider, defaults.get(args.provider))
    options = StartOptions(
        model=args.model,
        working_directory=args.cwd,
        sandbox_mode=args.sandbox,
        yolo=True if args.yolo else None,
    )
    if args.resume:
        thread = await coder.resume_thread(args.resume, options)
    else:
        thread = await coder.start_thread(options)

    run_opts = RunOptions(output_schema=_load_schema(args.schema) if args.schema else None)
    if not args.stream:
        result = await thread.run(args.prompt, run_opts)
        if result.json is not None:
            print(json.dumps(result.json, ensure_ascii=False, indent=2))
        elif result.text:
            print(result.text)
        LOGGER.info("run finished provider=%s thread_id=%s", args.provider, result.thread_id)
        return 0

    exit_code = 0
    async with thread.run_streamed(args.prompt, run_opts) as stream:
        async for event in stream:
            print(json.dumps(event.to_dict(), ensure_ascii=False, default=str), flush=True)
            if event.type == "error":
                exit_code = 1
    LOGGER.info("stream finished provider=%s thread_id=%s", args.provider, thread.id)
    return exit_code


def _load_schema(path: str) -> dict[str, Any]:
    schema = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    if not isinstance(schema, dict):
        raise SystemExit(f"schema must be a JSON object: {path}")
    return schema


def serve(args: argparse.Namespace, settings: CoderSettings) -> None:
    from headless_coder.server import create_app

    config_path = args.config or settings.config_path
    app = create_app(settings=settings, provider_defaults=load_provider_defaults(config_path))
    uvicorn.run(
        app,
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
        log_level=settings.log_level.lower(),
    )


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    if args.command == "serve":
        serve(args, settings)
        return

    try:
        exit_code = asyncio.run(run_once(args, settings))
    except KeyboardInterrupt:
        return
    except CoderError as error:
        print(f"error: {error}", file=sys.stderr)
        raise SystemExit(1) from error
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
