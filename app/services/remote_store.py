from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

ChangeListener = Callable[[Any], None]
PresenceListener = Callable[[int], None]
Unsubscribe = Callable[[], None]


class RemoteStoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class RemoteDocument:
    document_id: str
    payload: Any
    revision: int
    updated_at: datetime


class RemoteStore(Protocol):
    def fetch(self, document_id: str) -> RemoteDocument | None: ...

    def upsert(self, document_id: str, payload: Any, updated_at: datetime) -> None: ...

    def subscribe_to_changes(self, document_id: str, on_update: ChangeListener) -> Unsubscribe: ...

    def track_presence(self, channel: str, session_key: str) -> None: ...

    def untrack_presence(self, channel: str, session_key: str) -> None: ...

    def subscribe_to_presence(self, channel: str, on_count: PresenceListener) -> Unsubscribe: ...

    def poll_changes(self) -> None: ...
