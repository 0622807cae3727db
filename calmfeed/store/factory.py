"""Picks a persistence backend for CalmFeed."""

from enum import Enum

from calmfeed.store.base import Store


class StoreType(Enum):
    """Persistence backends. SQLite is the default; files suit small setups."""
    SQLITE = "sqlite"
    FILE = "file"


def create_store(store_type: StoreType | str, path: str) -> Store:
    """Open the store for a backend type.

    `path` is the database file for SQLite and the data directory for the
    file store. The type may be given by its config name ("sqlite", "file").
    """
    from calmfeed.store.sqlite import SQLiteStore
    from calmfeed.store.file import FileStore

    if isinstance(store_type, str):
        try:
            store_type = StoreType(store_type.lower())
        except ValueError:
            supported = ", ".join(t.value for t in StoreType)
            raise ValueError(
                f"Unknown store type: {store_type} (expected one of {supported})"
            ) from None

    if store_type is StoreType.SQLITE:
        return SQLiteStore(path)
    return FileStore(path)
