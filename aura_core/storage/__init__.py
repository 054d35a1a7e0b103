from aura_core.storage.object_store import ObjectStore, atomic_write_bytes
from aura_core.storage.paths import data_root, join_uri

__all__ = [
    "ObjectStore",
    "atomic_write_bytes",
    "data_root",
    "join_uri",
]
