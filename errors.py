from __future__ import annotations

from typing import Any


class InvalidInputError(ValueError):
    """Raised before any training work when a call cannot succeed as given."""

    def __init__(self, parameter: str, value: Any, reason: str) -> None:
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {parameter}={value!r}: {reason}")


class TrainingFailureError(RuntimeError):
    """Raised when training aborts; `failures` lists (context, message) pairs."""

    def __init__(self, failures: list[tuple[str, str]]) -> None:
        self.failures = list(failures)
        lines = [f"{context}: {message}" for context, message in self.failures]
        super().__init__(
            f"{len(self.failures)} training failure(s):\n  " + "\n  ".join(lines)
        )


def check_positive_int(name: str, value: Any, allow_none: bool = False) -> None:
    if value is None and allow_none:
        return
    if isinstance(value, bool) or not hasattr(value, "__index__"):
        raise InvalidInputError(name, value, "must be an integer")
    if int(value) < 1:
        raise InvalidInputError(name, value, "must be >= 1")
