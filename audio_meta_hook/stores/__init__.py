from .assets import HttpAssetStore, LocalAssetStore
from .records import PermissionDenied, RecordNotFound, SQLiteRecordStore

__all__ = [
    "HttpAssetStore",
    "LocalAssetStore",
    "PermissionDenied",
    "RecordNotFound",
    "SQLiteRecordStore",
]
