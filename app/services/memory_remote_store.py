from __future__ import annotations

import copy
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any

from app.services.remote_store import (
    ChangeListener,
    PresenceListener,
    RemoteDocument,
    RemoteStoreError,
    Unsubscribe,
)

logger = logging.getLogger(__name__)


class InMemoryRemoteStore:
    """Process-local stand-in for the shared backend.

    ``reads_available`` and ``writes_available`` can be switched off to
    simulate an outage.
    """

    def __init__(self) -> None:
        self.documents: dict[str, RemoteDocument] = {}
        self.upsert_calls: list[tuple[str, Any]] = []
        self.reads_available = True
        self.writes_available = True
        self._change_listeners: dict[str, list[ChangeListener]] = defaultdict(list)
        self._presence: dict[str, set[str]] = defaultdict(set)
        self._presence_listeners: dict[str, list[PresenceListener]] = defaultdict(list)

    def fetch(self, document_id: str) -> RemoteDocument | None:
        if not self.reads_available:
            raise RemoteStoreError('Remote store is unreachable')
        document = self.documents.get(document_id)
        if document is None:
            return None
        return RemoteDocument(
            document_id=document.document_id,
            payload=copy.deepcopy(document.payload),
            revision=document.revision,
            updated_at=document.updated_at,
        )

    def upsert(self, document_id: str, payload: Any, updated_at: datetime) -> None:
        if not self.writes_available:
            raise RemoteStoreError('Remote store rejected the write')
        previous = self.documents.get(document_id)
        revision = previous.revision + 1 if previous else 1
        stored = copy.deepcopy(payload)
        self.documents[document_id] = RemoteDocument(document_id, stored, revision, updated_at)
        self.upsert_calls.append((document_id, copy.deepcopy(payload)))
        self._broadcast(document_id, stored)

    def publish_external(self, document_id: str, payload: Any, updated_at: datetime) -> None:
        """Simulate a write made by another collaborator."""
        self.upsert(document_id, payload, updated_at)
        self.upsert_calls.pop()

    def subscribe_to_changes(self, document_id: str, on_update: ChangeListener) -> Unsubscribe:
        listeners = self._change_listeners[document_id]
        listeners.append(on_update)

        def _unsubscribe() -> None:
            if on_update in listeners:
                listeners.remove(on_update)

        return _unsubscribe

    def track_presence(self, channel: str, session_key: str) -> None:
        self._presence[channel].add(session_key)
        self._broadcast_presence(channel)

    def untrack_presence(self, channel: str, session_key: str) -> None:
        self._presence[channel].discard(session_key)
        self._broadcast_presence(channel)

    def subscribe_to_presence(self, channel: str, on_count: PresenceListener) -> Unsubscribe:
        listeners = self._presence_listeners[channel]
        listeners.append(on_count)
        on_count(len(self._presence[channel]))

        def _unsubscribe() -> None:
            if on_count in listeners:
                listeners.remove(on_count)

        return _unsubscribe

    def poll_changes(self) -> None:
        # every write is already broadcast synchronously
        return None

    def _broadcast(self, document_id: str, payload: Any) -> None:
        for listener in list(self._change_listeners[document_id]):
            listener(copy.deepcopy(payload))

    def _broadcast_presence(self, channel: str) -> None:
        count = len(self._presence[channel])
        for listener in list(self._presence_listeners[channel]):
            listener(count)
