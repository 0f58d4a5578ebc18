from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Protocol

from .session import ChatSession

logger = logging.getLogger(__name__)

Snapshot = list[dict[str, Any]]


class HistoryFeed(Protocol):
    def subscribe(self, user_id: str, listener: Callable[[Snapshot], None]) -> Callable[[], None]: ...

    def delete_record(self, user_id: str, record_id: str) -> bool: ...

    def update_symptoms(self, user_id: str, record_id: str, symptoms: str) -> dict[str, Any] | None: ...


class HistoryViewError(Exception):
    pass


class HistoryView:
    """Live, newest-first view of one user's history records.

    At most one subscription is open: binding a new identifier closes the
    previous subscription before the next one is opened.
    """

    def __init__(
        self,
        feed: HistoryFeed,
        session: ChatSession | None = None,
        *,
        on_change: Callable[[Snapshot], None] | None = None,
    ) -> None:
        self._feed = feed
        self._session = session
        self._on_change = on_change
        self._user_id: str | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._records: Snapshot = []
        self._generation = 0

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def records(self) -> Snapshot:
        return list(self._records)

    @property
    def subscribed(self) -> bool:
        return self._unsubscribe is not None

    def bind(self, user_id: str | None) -> None:
        if user_id and user_id == self._user_id and self.subscribed:
            return
        self.close()
        if not user_id:
            return
        self._user_id = user_id
        listener = functools.partial(self._receive, self._generation)
        self._unsubscribe = self._feed.subscribe(user_id, listener)
        logger.info("Subscribed history view for %s", user_id)

    def close(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
            logger.info("Unsubscribed history view for %s", self._user_id)
        self._generation += 1
        self._user_id = None
        self._records = []

    def select(self, record_id: str) -> dict[str, Any]:
        record = self._find(record_id)
        if record is None:
            raise HistoryViewError(f"History record not found: {record_id}")
        if self._session is not None:
            self._session.load_history(record)
        return record

    def delete(self, record_id: str) -> bool:
        return self._feed.delete_record(self._require_user(), record_id)

    def edit_symptoms(self, record_id: str, symptoms: str) -> dict[str, Any] | None:
        return self._feed.update_symptoms(self._require_user(), record_id, symptoms)

    def _require_user(self) -> str:
        if self._user_id is None:
            raise HistoryViewError("History view is not bound to a user.")
        return self._user_id

    def _find(self, record_id: str) -> dict[str, Any] | None:
        for record in self._records:
            if record.get("id") == record_id:
                return record
        return None

    def _receive(self, generation: int, snapshot: Snapshot) -> None:
        if generation != self._generation:
            logger.debug("Dropping snapshot from a closed history subscription")
            return
        self._records = sorted(snapshot, key=lambda record: record.get("createdAt") or "", reverse=True)
        if self._on_change is not None:
            self._on_change(self.records)
