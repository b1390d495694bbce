from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from app.schemas import AuditLogEntry
from app.services.timers import KeyedDebouncer, TimerBackend

logger = logging.getLogger(__name__)

TRACKED_FIELDS = (
    'status',
    'order_number',
    'invoice_number',
    'expected_arrival',
    'actual_arrival_date',
    'supplier',
    'brand',
    'description',
    'quantity',
    'unit',
    'type',
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _wire_value(record: BaseModel, field: str) -> Any:
    value = getattr(record, field, None)
    if isinstance(value, Enum):
        return value.value
    return value


def diff_tracked_fields(before: BaseModel, after: BaseModel) -> dict[str, dict[str, Any]]:
    changes: dict[str, dict[str, Any]] = {}
    for field in TRACKED_FIELDS:
        old = _wire_value(before, field)
        new = _wire_value(after, field)
        if json.dumps(old, sort_keys=True, default=str) == json.dumps(new, sort_keys=True, default=str):
            continue
        changes[to_camel(field)] = {'from': old, 'to': new}
    return changes


def action_label(changes: dict[str, dict[str, Any]]) -> str:
    if 'status' in changes:
        return f"Status change to {changes['status']['to']}"
    return 'Information update'


def build_entry(
    changes: dict[str, dict[str, Any]],
    *,
    user: str,
    timestamp: datetime,
) -> AuditLogEntry:
    return AuditLogEntry(
        id=f'LOG-{uuid.uuid4().hex[:12]}',
        timestamp=timestamp.isoformat(),
        user=user,
        action=action_label(changes),
        changes=changes,
    )


class AuditTrailRecorder:
    """Coalesces bursts of edits to one record into a single history entry.

    The first ``track`` call for a record captures its pre-mutation value; every
    later call only restarts the quiet-window timer. When the timer fires the
    baseline is diffed against the record's current value and, if anything
    changed, ``commit_entry`` is handed the new entry.
    """

    def __init__(
        self,
        backend: TimerBackend,
        *,
        delay: float,
        resolve_record: Callable[[str], BaseModel | None],
        commit_entry: Callable[[str, AuditLogEntry], None],
        user_label: Callable[[], str],
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._resolve_record = resolve_record
        self._commit_entry = commit_entry
        self._user_label = user_label
        self._clock = clock
        self._baselines: dict[str, BaseModel] = {}
        self._debouncer: KeyedDebouncer[str] = KeyedDebouncer(backend, delay, self._commit)

    def pending_records(self) -> list[str]:
        return list(self._baselines)

    def track(self, record_id: str, baseline: BaseModel) -> None:
        self._baselines.setdefault(record_id, baseline.model_copy(deep=True))
        self._debouncer.schedule(record_id)

    def discard(self, record_id: str) -> None:
        self._debouncer.cancel(record_id)
        self._baselines.pop(record_id, None)

    def cancel_all(self) -> None:
        self._debouncer.cancel_all()
        self._baselines.clear()

    def flush(self) -> None:
        for record_id in list(self._baselines):
            self._debouncer.cancel(record_id)
            self._commit(record_id)

    def _commit(self, record_id: str) -> None:
        baseline = self._baselines.pop(record_id, None)
        if baseline is None:
            return
        current = self._resolve_record(record_id)
        if current is None:
            logger.debug('Audit target %s no longer exists; dropping pending diff', record_id)
            return

        changes = diff_tracked_fields(baseline, current)
        if not changes:
            logger.debug('No net change on %s; no history entry', record_id)
            return

        entry = build_entry(changes, user=self._user_label(), timestamp=self._clock())
        logger.info('Committing audit entry for %s: %s', record_id, entry.action)
        self._commit_entry(record_id, entry)
