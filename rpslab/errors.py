from __future__ import annotations


class RpsLabError(Exception):
    """Base class for engine errors."""


class InvalidMoveError(RpsLabError, ValueError):
    """A move could not be parsed at an input boundary."""


class MalformedStateError(RpsLabError, ValueError):
    """A persisted record does not have the expected shape."""
