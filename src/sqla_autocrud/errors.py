from __future__ import annotations


class AutocrudError(Exception):
    """Base class for every error raised by sqla_autocrud."""


class ValidationError(AutocrudError, ValueError):
    """A request is malformed or names something that does not exist.

    Always recoverable: the caller should report the message and must not retry
    the same request.
    """


class CursorError(ValidationError):
    """A pagination cursor is malformed or was issued for another sort order."""


class ComplexityError(ValidationError):
    """A request exceeds a configured complexity ceiling."""

    def __init__(self, message: str, *, score: int, depth: int, breadth: int) -> None:
        super().__init__(message)
        self.score = score
        self.depth = depth
        self.breadth = breadth


class DataAccessError(AutocrudError):
    """A database round trip failed.

    Args:
        message: Human readable summary.
        table: Table the operation targeted, if any.
        operation: Short operation name (``select``, ``reflect``, ...).
    """

    def __init__(self, message: str, *, table: str | None = None, operation: str | None = None) -> None:
        super().__init__(message)
        self.table = table
        self.operation = operation

    def __str__(self) -> str:
        context = ", ".join(
            f"{name}={value}"
            for name, value in (("table", self.table), ("operation", self.operation))
            if value
        )
        message = super().__str__()
        return f"{message} ({context})" if context else message


class LoadCancelledError(DataAccessError):
    """A relationship batch was aborted by a deadline or cancellation."""
