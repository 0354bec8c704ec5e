"""Errors raised by the optimizer engine.

None of these are retried by the engine. Each carries a human-readable
``message`` suitable for showing to the user as-is.
"""
from typing import Optional


class OptimizerError(Exception):
    """Base class for engine failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnreadableSource(OptimizerError):
    """The source file cannot be parsed or decoded at all."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class UnsupportedConversion(OptimizerError):
    """The (kind, format) pair is not legal."""

    def __init__(self, kind, target):
        super().__init__(f"Cannot convert {kind.value} files to {target.value.upper()}")
        self.kind = kind
        self.target = target


class MultiPageUnsupported(OptimizerError):
    """The target format cannot hold the source's pages."""

    def __init__(self, target, page_count: int):
        super().__init__(
            f"{target.value.upper()} holds a single page but the source has {page_count} pages"
        )
        self.target = target
        self.page_count = page_count


class OptionsOutOfRange(OptimizerError):
    def __init__(self, field: str, value, low, high):
        super().__init__(f"{field} must be between {low} and {high}, got {value}")
        self.field = field
        self.value = value


class CodecFailure(OptimizerError):
    """An encoder or decoder failed. ``cause`` is the underlying error."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class Cancelled(OptimizerError):
    def __init__(self, message: str = "Conversion cancelled"):
        super().__init__(message)
