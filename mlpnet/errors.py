"""
errors.py
~~~~~~~~~

Exception types raised by the network engine and its collaborators.
"""

from typing import Optional


class MlpNetError(Exception):
    """Base class for all mlpnet errors."""


class DimensionMismatch(MlpNetError, ValueError):
    """A vector length does not match the network topology."""

    def __init__(self, what: str, expected: int, actual: int):
        self.what = what
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{what} has length {actual}, expected {expected}"
        )


class PersistenceError(MlpNetError):
    """A snapshot or catalog could not be written or read back."""


class ImageDecodeError(MlpNetError):
    """An image file could not be turned into a brightness vector."""

    def __init__(self, path: str, reason: Optional[str] = None):
        self.path = path
        message = f"Cannot decode image '{path}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class LabelParseError(MlpNetError, ValueError):
    """A filename does not start with a numeric class label."""

    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(f"Cannot parse label from filename '{filename}'")
