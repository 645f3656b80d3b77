"""Orchestration error hierarchy.

Every error carries typed fields, supports ``to_dict()`` for event
payloads, and has a readable ``__str__`` for logging.  Rate-limit and
security failures are distinct types so the conversation layer can let
them through while absorbing everything else.
"""

from __future__ import annotations


class PhaseForgeError(Exception):
    """Base error for all orchestration failures."""

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, **self.detail}

    def __str__(self) -> str:
        return self.message


class ConfigurationError(PhaseForgeError):
    """A required setting (API key, provider) is missing or invalid."""


class InferenceError(PhaseForgeError):
    """The model call failed after transport-level retries."""

    def __init__(
        self,
        message: str,
        *,
        action: str = "",
        status_code: int | None = None,
        detail: dict | None = None,
    ) -> None:
        self.action = action
        self.status_code = status_code
        merged = {"action": action, "status_code": status_code, **(detail or {})}
        super().__init__(message, detail=merged)


class RateLimitExceededError(InferenceError):
    """Provider rejected the call with 429 after all retries."""


class SecurityError(InferenceError):
    """Provider refused the call on policy or permission grounds."""


class SchemaValidationError(PhaseForgeError):
    """Model output did not validate against the requested schema."""

    def __init__(self, schema_name: str, attempts: int, errors: list[str]) -> None:
        self.schema_name = schema_name
        self.attempts = attempts
        self.errors = list(errors)
        super().__init__(
            f"Output did not match {schema_name} after {attempts} attempt(s)",
            detail={"schema": schema_name, "attempts": attempts, "errors": self.errors},
        )


class OperationError(PhaseForgeError):
    """An operation received unusable input or produced unusable output."""

    def __init__(self, operation: str, message: str, *, detail: dict | None = None) -> None:
        self.operation = operation
        super().__init__(f"{operation}: {message}", detail={"operation": operation, **(detail or {})})


__all__ = [
    "ConfigurationError",
    "InferenceError",
    "OperationError",
    "PhaseForgeError",
    "RateLimitExceededError",
    "SchemaValidationError",
    "SecurityError",
]
