from __future__ import annotations

import copy
import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.db import SessionLocal
from app.models import PresenceSession, SyncDocument
from app.services.remote_store import (
    ChangeListener,
    PresenceListener,
    RemoteDocument,
    RemoteStoreError,
    Unsubscribe,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlRemoteStore:
    """Single-row document store backed by SQLAlchemy.

    Writes made through this instance are fanned out to local subscribers
    immediately; writes made by other processes are picked up by
    ``poll_changes`` comparing document revisions.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] = SessionLocal,
        *,
        presence_ttl_seconds: int = settings.presence_ttl_seconds,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._session_factory = session_factory
        self._presence_ttl = timedelta(seconds=presence_ttl_seconds)
        self._clock = clock
        self._change_listeners: dict[str, list[ChangeListener]] = defaultdict(list)
        self._seen_revisions: dict[str, int] = {}
        self._presence_listeners: dict[str, list[PresenceListener]] = defaultdict(list)
        self._tracked: dict[str, set[str]] = defaultdict(set)
        self._last_counts: dict[str, int] = {}

    def fetch(self, document_id: str) -> RemoteDocument | None:
        try:
            with self._session_factory() as db:
                row = db.execute(select(SyncDocument).where(SyncDocument.id == document_id)).scalar_one_or_none()
                if row is None:
                    return None
                self._seen_revisions[document_id] = max(self._seen_revisions.get(document_id, 0), row.revision)
                return RemoteDocument(
                    document_id=row.id,
                    payload=copy.deepcopy(row.payload),
                    revision=row.revision,
                    updated_at=_as_utc(row.updated_at),
                )
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f'Could not fetch document {document_id}') from exc

    def upsert(self, document_id: str, payload: Any, updated_at: datetime) -> None:
        try:
            with self._session_factory() as db:
                row = db.execute(select(SyncDocument).where(SyncDocument.id == document_id)).scalar_one_or_none()
                if row is None:
                    row = SyncDocument(id=document_id, payload=payload, revision=1, updated_at=updated_at)
                    db.add(row)
                else:
                    row.payload = payload
                    row.revision = row.revision + 1
                    row.updated_at = updated_at
                db.commit()
                revision = row.revision
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f'Could not write document {document_id}') from exc

        logger.debug('Stored %s at revision %s', document_id, revision)
        self._seen_revisions[document_id] = revision
        self._broadcast(document_id, payload)

    def subscribe_to_changes(self, document_id: str, on_update: ChangeListener) -> Unsubscribe:
        listeners = self._change_listeners[document_id]
        listeners.append(on_update)

        def _unsubscribe() -> None:
            if on_update in listeners:
                listeners.remove(on_update)

        return _unsubscribe

    def track_presence(self, channel: str, session_key: str) -> None:
        self._tracked[channel].add(session_key)
        self._heartbeat(channel, session_key)
        self._refresh_presence(channel)

    def untrack_presence(self, channel: str, session_key: str) -> None:
        self._tracked[channel].discard(session_key)
        try:
            with self._session_factory() as db:
                db.execute(
                    delete(PresenceSession).where(
                        PresenceSession.channel == channel,
                        PresenceSession.session_key == session_key,
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f'Could not leave presence channel {channel}') from exc
        self._refresh_presence(channel)

    def subscribe_to_presence(self, channel: str, on_count: PresenceListener) -> Unsubscribe:
        listeners = self._presence_listeners[channel]
        listeners.append(on_count)
        on_count(self.count_presence(channel))

        def _unsubscribe() -> None:
            if on_count in listeners:
                listeners.remove(on_count)

        return _unsubscribe

    def count_presence(self, channel: str) -> int:
        cutoff = self._clock() - self._presence_ttl
        try:
            with self._session_factory() as db:
                rows = db.execute(
                    select(PresenceSession.session_key, PresenceSession.last_seen_at).where(
                        PresenceSession.channel == channel
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f'Could not read presence channel {channel}') from exc
        return len({row.session_key for row in rows if _as_utc(row.last_seen_at) >= cutoff})

    def poll_changes(self) -> None:
        for document_id, listeners in list(self._change_listeners.items()):
            if not listeners:
                continue
            try:
                with self._session_factory() as db:
                    revision = db.execute(
                        select(SyncDocument.revision).where(SyncDocument.id == document_id)
                    ).scalar_one_or_none()
            except SQLAlchemyError:
                logger.warning('Change poll failed for %s', document_id, exc_info=True)
                continue
            if revision is None or revision <= self._seen_revisions.get(document_id, 0):
                continue
            document = self.fetch(document_id)
            if document is not None:
                logger.info('Remote revision %s detected for %s', document.revision, document_id)
                self._broadcast(document_id, document.payload)

        for channel, keys in list(self._tracked.items()):
            try:
                for session_key in keys:
                    self._heartbeat(channel, session_key)
                self._refresh_presence(channel)
            except RemoteStoreError:
                logger.warning('Presence heartbeat failed for %s', channel, exc_info=True)

    def _heartbeat(self, channel: str, session_key: str) -> None:
        try:
            with self._session_factory() as db:
                row = db.execute(
                    select(PresenceSession).where(
                        PresenceSession.channel == channel,
                        PresenceSession.session_key == session_key,
                    )
                ).scalar_one_or_none()
                if row is None:
                    db.add(PresenceSession(channel=channel, session_key=session_key, last_seen_at=self._clock()))
                else:
                    row.last_seen_at = self._clock()
                db.commit()
        except SQLAlchemyError as exc:
            raise RemoteStoreError(f'Could not join presence channel {channel}') from exc

    def _refresh_presence(self, channel: str) -> None:
        count = self.count_presence(channel)
        if self._last_counts.get(channel) == count:
            return
        self._last_counts[channel] = count
        for listener in list(self._presence_listeners[channel]):
            listener(count)

    def _broadcast(self, document_id: str, payload: Any) -> None:
        for listener in list(self._change_listeners[document_id]):
            listener(copy.deepcopy(payload))
