"""Store module - persistence layer for CalmFeed."""

from calmfeed.store.base import Store
from calmfeed.store.sqlite import SQLiteStore
from calmfeed.store.file import FileStore
from calmfeed.store.factory import StoreType, create_store

__all__ = ["Store", "SQLiteStore", "FileStore", "StoreType", "create_store"]
