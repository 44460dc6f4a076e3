"""Exceptions raised by the storage layer and the graph manager."""

from __future__ import annotations


class KGMemError(Exception):
    """Base class for kgmem errors."""


class EntityNotFoundError(KGMemError, LookupError):
    """A strict operation referenced an entity that does not exist."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Entity with name {name} not found")


class IndexFormatError(KGMemError, ValueError):
    """The index payload between the markers cannot be used.

    Never escapes StorageManager: it always triggers a rebuild from data.
    """


class RecordFormatError(KGMemError, ValueError):
    """A single data line is not a valid entity or relation record."""


class StorageIOError(KGMemError, OSError):
    """The memory file could not be read or written."""
