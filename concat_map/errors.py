"""Exception types raised by concat_map."""
from __future__ import annotations


class ConcatMapError(Exception):
    """Base error for the concat_map package."""


class EmptyIndexError(ConcatMapError):
    """Raised when a feature index with no analyzed blocks is queried or started."""


class AudioLoadError(ConcatMapError):
    """Raised when an audio file exists but cannot be decoded."""
