from aura_core.stores.interfaces import ReleaseHistoryStore, ReleaseStore
from aura_core.stores.registry import StoreBundle, get_store_bundle

__all__ = [
    "ReleaseHistoryStore",
    "ReleaseStore",
    "StoreBundle",
    "get_store_bundle",
]
