"""Errors raised by stampede.

Only conditions that stop a run become exceptions: a scenario that cannot be
loaded, or a run that cannot proceed. Per-request problems (refused
connections, timeouts, 4xx/5xx answers) are outcomes, classified and counted,
and never raised.
"""

from __future__ import annotations

from typing import Any


class StampedeError(Exception):
    """Base exception for all stampede errors.

    Attributes:
        message: Human-readable error description
        context: Values that locate the problem (config path, phase index, threshold name)
        original_error: Exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        base = self.message
        if self.context:
            base = f"{base} [{', '.join(f'{k}={v!r}' for k, v in self.context.items())}]"
        if self.original_error:
            base = f"{base} (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return base

    def with_context(self, **kwargs: Any) -> "StampedeError":
        """Add context (e.g. the config path) and return self, for re-raising."""
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Structured form for JSON log lines."""
        out: dict[str, Any] = {"type": type(self).__name__, "message": self.message}
        if self.context:
            out["context"] = dict(self.context)
        if self.original_error:
            out["caused_by"] = f"{type(self.original_error).__name__}: {self.original_error}"
        return out


class StampedeConfigError(StampedeError):
    """Raised when a scenario cannot start because its configuration is invalid.

    Always raised before any virtual user starts. Common causes:
    - Scenario file not found or invalid YAML
    - Empty phase list, zero or infinite phase duration, negative level
    - Empty caller identifier pool
    - Malformed threshold expression or a reserved threshold name
    """


class StampedeRunnerError(StampedeError):
    """Raised when a run cannot proceed once configuration has been accepted.

    Common causes:
    - HTTP client could not be created (e.g. http2 without the h2 package)
    - Report output path not writable
    """
