from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from typing import Any, Callable

from .database import SQLiteHistoryDB
from .record_guard import RecordGuard, RecordPolicyError
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)

HistoryListener = Callable[[list[dict[str, Any]]], None]

_PAYLOAD_FIELDS = {
    "text": "symptoms",
    "image": "imageName",
    "audio": "audioTranscription",
}

_SELECT_COLUMNS = """
    id, type, symptoms, image_name, audio_transcription, answer, image_data, created_at, updated_at
"""


def _record_from_row(row: sqlite3.Row) -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": row["id"],
        "type": row["type"],
        "answer": row["answer"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }
    if row["type"] == "text":
        record["symptoms"] = row["symptoms"]
    elif row["type"] == "image":
        record["imageName"] = row["image_name"]
        if row["image_data"]:
            record["imageData"] = row["image_data"]
    else:
        record["audioTranscription"] = row["audio_transcription"]
    return record


class HistoryStore:
    """Per-user history of completed exchanges with push-on-change listeners.

    Listeners receive the full snapshot (newest first) once on subscribe and
    again after every committed write to that user's partition.
    """

    def __init__(self, db: SQLiteHistoryDB) -> None:
        self._db = db
        self.guard = RecordGuard()
        self._listeners: dict[str, dict[str, HistoryListener]] = {}
        self._listeners_lock = threading.Lock()

    def add_record(
        self,
        *,
        user_id: str,
        record_type: str,
        answer: str,
        symptoms: str | None = None,
        image_name: str | None = None,
        audio_transcription: str | None = None,
        image_data: str | None = None,
    ) -> dict[str, Any]:
        self.guard.ensure_user_scope(user_id)
        record_type = self.guard.ensure_record_type(record_type)
        if record_type == "text":
            symptoms = self.guard.normalize_symptoms(symptoms)
            image_name = audio_transcription = image_data = None
        elif record_type == "image":
            image_name = self.guard.normalize_image_name(image_name)
            symptoms = audio_transcription = None
        else:
            audio_transcription = (audio_transcription or "").strip()
            if not audio_transcription:
                raise RecordPolicyError("audioTranscription required", field="audioTranscription")
            symptoms = image_name = image_data = None

        now = to_iso(utc_now())
        record_id = f"rec_{uuid.uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO history_records (
                  id, user_id, type, symptoms, image_name, audio_transcription,
                  answer, image_data, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    user_id,
                    record_type,
                    symptoms,
                    image_name,
                    audio_transcription,
                    answer or "",
                    image_data,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM history_records WHERE id = ?",
                (record_id,),
            ).fetchone()
        record = _record_from_row(row)
        logger.info("Stored %s history record %s for %s", record_type, record_id, user_id)
        self._notify(user_id)
        return record

    def list_records(self, user_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        self.guard.ensure_user_scope(user_id)
        sql = f"""
            SELECT {_SELECT_COLUMNS}
            FROM history_records
            WHERE user_id = ?
            ORDER BY created_at DESC, rowid DESC
        """
        params: list[Any] = [user_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(1, int(limit)))
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [_record_from_row(row) for row in rows]

    def get_record(self, user_id: str, record_id: str) -> dict[str, Any] | None:
        self.guard.ensure_user_scope(user_id)
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM history_records WHERE user_id = ? AND id = ?",
                (user_id, record_id),
            ).fetchone()
        return _record_from_row(row) if row else None

    def find_latest_image(self, user_id: str, image_name: str) -> dict[str, Any] | None:
        self.guard.ensure_user_scope(user_id)
        image_name = self.guard.normalize_image_name(image_name)
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM history_records
                WHERE user_id = ? AND type = 'image' AND image_name = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (user_id, image_name),
            ).fetchone()
        return _record_from_row(row) if row else None

    def update_symptoms(self, user_id: str, record_id: str, symptoms: str) -> dict[str, Any] | None:
        self.guard.ensure_user_scope(user_id)
        cleaned = self.guard.normalize_symptoms(symptoms)
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE history_records
                SET symptoms = ?, updated_at = ?
                WHERE user_id = ? AND id = ? AND type = 'text'
                """,
                (cleaned, to_iso(utc_now()), user_id, record_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM history_records WHERE id = ?",
                (record_id,),
            ).fetchone()
        self._notify(user_id)
        return _record_from_row(row)

    def delete_record(self, user_id: str, record_id: str) -> bool:
        self.guard.ensure_user_scope(user_id)
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM history_records WHERE user_id = ? AND id = ?",
                (user_id, record_id),
            )
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted history record %s for %s", record_id, user_id)
            self._notify(user_id)
        return deleted

    def subscribe(self, user_id: str, listener: HistoryListener) -> Callable[[], None]:
        self.guard.ensure_user_scope(user_id)
        token = uuid.uuid4().hex
        with self._listeners_lock:
            self._listeners.setdefault(user_id, {})[token] = listener
        logger.debug("Opened history subscription %s for %s", token, user_id)
        listener(self.list_records(user_id))

        def unsubscribe() -> None:
            with self._listeners_lock:
                scoped = self._listeners.get(user_id)
                if scoped is None or scoped.pop(token, None) is None:
                    return
                if not scoped:
                    del self._listeners[user_id]
            logger.debug("Closed history subscription %s for %s", token, user_id)

        return unsubscribe

    def listener_count(self, user_id: str) -> int:
        with self._listeners_lock:
            return len(self._listeners.get(user_id, {}))

    def _notify(self, user_id: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners.get(user_id, {}).values())
        if not listeners:
            return
        snapshot = self.list_records(user_id)
        for listener in listeners:
            try:
                listener(list(snapshot))
            except Exception:
                logger.exception("History listener failed for %s", user_id)
