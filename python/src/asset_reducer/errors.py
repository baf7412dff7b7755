"""Exception hierarchy for asset-reducer.

Fatal errors (bad parameters, unreadable sources, unwritable targets) surface
to the caller. ``SimplificationError`` and ``TextureResampleError`` are
recoverable: the processor catches them and keeps the original data.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Union


class ReducerError(Exception):
    """Base exception for all asset-reducer errors."""

    retryable = False

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for job reports."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "retryable": self.retryable,
            "cause": str(self.cause) if self.cause else None,
        }


class InvalidParameter(ReducerError, ValueError):
    """A simplification parameter is out of range."""

    def __init__(self, name: str, value: Any, expected: str) -> None:
        super().__init__(f"{name} must be {expected}, got {value!r}")
        self.name = name
        self.value = value


class MissingRequiredParameter(InvalidParameter):
    """A mandatory parameter was not supplied."""

    def __init__(self, name: str) -> None:
        ReducerError.__init__(self, f"{name} is required")
        self.name = name
        self.value = None


class AssetLoadError(ReducerError):
    """Source asset or cached artifact could not be read."""

    retryable = True

    def __init__(
        self,
        path: Union[str, Path],
        reason: str,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"Failed to load {path}: {reason}", cause=cause)
        self.path = Path(path)


class AssetWriteError(ReducerError):
    """Processed asset could not be persisted."""

    retryable = True

    def __init__(
        self,
        path: Union[str, Path],
        reason: str,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"Failed to write {path}: {reason}", cause=cause)
        self.path = Path(path)


class SimplificationError(ReducerError):
    """Decimation of a single mesh part failed."""


class TextureResampleError(ReducerError):
    """Resampling of a single texture failed."""
