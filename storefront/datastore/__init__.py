from storefront.datastore.stores import (
    KeyValueStore,
    MemoryBackend,
    MemoryKeyValueStore,
    SQLKeyValueStore,
    StorageEvent,
)

__all__ = [
    "KeyValueStore",
    "MemoryBackend",
    "MemoryKeyValueStore",
    "SQLKeyValueStore",
    "StorageEvent",
]
