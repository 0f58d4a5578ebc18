from .database import PersistenceError, SQLiteHistoryDB
from .history_store import HistoryListener, HistoryStore
from .record_guard import RecordGuard, RecordPolicyError

__all__ = [
    "HistoryListener",
    "HistoryStore",
    "PersistenceError",
    "RecordGuard",
    "RecordPolicyError",
    "SQLiteHistoryDB",
]
