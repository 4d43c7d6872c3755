from __future__ import annotations


class CoderError(Exception):
    """Base class for every error raised by headless_coder."""


class RunInProgressError(CoderError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"{provider} adapter only supports one in-flight run per thread.")
        self.provider = provider


class CoderRunError(CoderError):
    """A backend run failed: non-zero exit, failure event or SDK exception."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.code = code
        self.exit_code = exit_code
        self.stderr = stderr


class InterruptedRunError(CoderRunError):
    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "Operation was interrupted", code="interrupted")
        self.reason = reason or "Interrupted"


def is_interrupted_error(error: BaseException) -> bool:
    if isinstance(error, InterruptedRunError):
        return True
    return getattr(error, "code", None) == "interrupted"
