"""Process-wide table of adapter factories keyed by provider id.

Populate it once at startup (or lazily on first use) and read it many times.
Re-registering a provider replaces the previous factory.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Optional

from headless_coder.options import StartOptions

if TYPE_CHECKING:
    from headless_coder.adapters.base import HeadlessCoder

LOGGER = logging.getLogger(__name__)

AdapterFactory = Callable[[Optional[StartOptions]], "HeadlessCoder"]

_FACTORIES: dict[str, AdapterFactory] = {}


def register_adapter(factory: AdapterFactory, name: str | None = None) -> None:
    coder_name = name or getattr(factory, "coder_name", None)
    if not coder_name:
        raise ValueError("adapter factory must declare coder_name or be registered with an explicit name")
    previous = _FACTORIES.get(coder_name)
    _FACTORIES[coder_name] = factory
    if previous is not None and previous is not factory:
        LOGGER.debug("replaced adapter factory provider=%s", coder_name)


def unregister_adapter(name: str) -> None:
    _FACTORIES.pop(name, None)


def get_adapter_factory(name: str) -> AdapterFactory | None:
    return _FACTORIES.get(name)


def registered_providers() -> list[str]:
    return sorted(_FACTORIES)


def create_coder(name: str, defaults: StartOptions | None = None) -> HeadlessCoder:
    factory = _FACTORIES.get(name)
    if factory is None:
        raise ValueError(f"unsupported adapter: {name}")
    return factory(defaults)


def clear_registry() -> None:
    _FACTORIES.clear()
