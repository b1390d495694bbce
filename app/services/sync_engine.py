from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from app.auth import (
    FULL_ONLY,
    PUSH_LEVELS,
    REQUEST_WRITERS,
    AccessLevel,
    Authenticator,
    PermissionDeniedError,
    ensure_access,
)
from app.models import ItemStatus, SyncStatus
from app.schemas import (
    AuditLogEntry,
    Dataset,
    Item,
    ManualRequest,
    ManualRequestDraft,
    NormalizedSheetData,
    Sheet,
)
from app.security.sessions import SessionContext
from app.services import manual_request_service as projector
from app.services.audit_service import AuditTrailRecorder
from app.services.local_cache import LocalCache
from app.services.payload_codec import (
    PayloadFormatError,
    backup_filename,
    decode_payload,
    encode_payload,
    parse_backup,
    render_backup,
)
from app.services.remote_calls import InlineRunner, RemoteCallRunner
from app.services.remote_store import RemoteDocument, RemoteStore, RemoteStoreError, Unsubscribe
from app.services.status_rules import (
    ITEM_EDITABLE_FIELDS,
    REQUEST_EDITABLE_FIELDS,
    apply_order_info,
    apply_status,
    clean_info,
    is_late,
)
from app.services.text_utils import normalize_text
from app.services.timers import DebouncedTask, TimerBackend

logger = logging.getLogger(__name__)


class SyncNotReadyError(RuntimeError):
    pass


@dataclass(frozen=True)
class BackupFile:
    filename: str
    content: str


@dataclass(frozen=True)
class SyncSnapshot:
    status: SyncStatus
    is_dirty: bool
    initial_load_complete: bool
    last_sync_time: datetime | None
    active_collaborators: int


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class SyncEngine:
    """Owns the canonical dataset for one collaborator process.

    Local edits are applied optimistically, persisted to the local cache and
    pushed to the shared document after a quiet window. Remote changes are
    adopted only while no local edit is waiting to be pushed by this session.

    Pushes, change polls and manual refetches go through ``runner`` so a
    threaded runner keeps database round-trips off the event loop; their
    completions are applied back on the loop. Initial load and the final push
    on shutdown run inline, before requests are served and after they stop.
    """

    def __init__(
        self,
        *,
        remote: RemoteStore,
        cache: LocalCache,
        session: SessionContext,
        authenticator: Authenticator,
        timers: TimerBackend,
        document_id: str,
        presence_channel: str,
        push_delay: float = 1.5,
        audit_delay: float = 10.0,
        created_date_format: str = '%d/%m/%Y',
        clock: Callable[[], datetime] = _now,
        runner: RemoteCallRunner | None = None,
    ) -> None:
        self._remote = remote
        self._runner = runner or InlineRunner()
        self._cache = cache
        self.session = session
        self.authenticator = authenticator
        self._document_id = document_id
        self._presence_channel = presence_channel
        self._created_date_format = created_date_format
        self._clock = clock

        self._dataset = Dataset()
        self.is_dirty = False
        self.initial_load_complete = False
        self.sync_status = SyncStatus.LOADING
        self.last_sync_time: datetime | None = None
        self.active_collaborators = 0

        self._push_task = DebouncedTask(timers, push_delay, self._push)
        self._audit = AuditTrailRecorder(
            timers,
            delay=audit_delay,
            resolve_record=self.find_item,
            commit_entry=self._commit_audit_entry,
            user_label=lambda: self.session.user_label,
            clock=clock,
        )
        self._subscriptions: list[Unsubscribe] = []
        self._push_in_flight = False
        self._push_again = False
        self._poll_in_flight = False

    # lifecycle

    def start(self) -> SyncStatus:
        self.sync_status = SyncStatus.LOADING
        remote_ok = True
        remote_empty = False
        dataset: Dataset | None = None

        try:
            document = self._remote.fetch(self._document_id)
        except RemoteStoreError:
            logger.warning('Remote store unavailable at load; falling back to local cache', exc_info=True)
            remote_ok = False
            document = None

        if document is not None:
            try:
                dataset = decode_payload(document.payload)
                self._cache.write(dataset)
            except PayloadFormatError:
                logger.error('Remote document %s is malformed; using local cache', self._document_id)
                remote_ok = False
        elif remote_ok:
            remote_empty = True

        if dataset is None:
            dataset = self._cache.read()
            if dataset is not None and remote_empty:
                # seed an empty backend from this device
                self.is_dirty = True

        self._dataset = dataset or Dataset()
        self._subscribe()
        self.initial_load_complete = True

        if not remote_ok:
            self.sync_status = SyncStatus.OFFLINE
        elif self.is_dirty:
            self.sync_status = SyncStatus.PENDING
            self._push_task.schedule()
        else:
            self.sync_status = SyncStatus.SYNCED
            self.last_sync_time = self._clock()
        logger.info(
            'Loaded %d sheet(s) and %d manual request(s); status=%s',
            len(self._dataset.sheets),
            len(self._dataset.manual_requests),
            self.sync_status.value,
        )
        return self.sync_status

    def _subscribe(self) -> None:
        try:
            # feeds may fire on a worker thread; hop back to the engine's thread
            self._subscriptions.append(
                self._remote.subscribe_to_changes(
                    self._document_id,
                    lambda payload: self._runner.dispatch(self._on_remote_update, payload),
                )
            )
            self._subscriptions.append(
                self._remote.subscribe_to_presence(
                    self._presence_channel,
                    lambda count: self._runner.dispatch(self._on_presence_count, count),
                )
            )
            self._remote.track_presence(self._presence_channel, self.session.session_key)
        except RemoteStoreError:
            logger.warning('Could not subscribe to remote feeds', exc_info=True)

    def shutdown(self) -> None:
        self._audit.flush()
        self._push_task.cancel()
        if self.is_dirty:
            self._push(final=True)
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        try:
            self._remote.untrack_presence(self._presence_channel, self.session.session_key)
        except RemoteStoreError:
            logger.warning('Could not leave presence channel', exc_info=True)

    def poll_remote(self) -> None:
        if self._poll_in_flight:
            return
        self._poll_in_flight = True
        self._runner.submit(self._remote.poll_changes, self._poll_done)

    def _poll_done(self, _result: Any, error: RemoteStoreError | None) -> None:
        self._poll_in_flight = False
        if error is not None:
            logger.warning('Remote change poll failed: %s', error)

    # session

    def login(self, level: AccessLevel, display_name: str | None = None) -> None:
        if self._can_push() and level not in PUSH_LEVELS:
            self._hand_off()
        self.session.login(level, display_name)
        if self.is_dirty and level in PUSH_LEVELS:
            # changes held back while nobody with push rights was signed in
            self.sync_status = SyncStatus.PENDING
            self._push_task.schedule()

    def logout(self) -> None:
        self._hand_off()
        self.session.logout()

    def _hand_off(self) -> None:
        """Commit pending history and push before the session loses its push rights."""
        self._audit.flush()
        if self.is_dirty:
            self._push_task.cancel()
            self._push()

    # reads

    @property
    def dataset(self) -> Dataset:
        return self._dataset

    @property
    def sheets(self) -> list[Sheet]:
        return self._dataset.sheets

    @property
    def manual_requests(self) -> list[ManualRequest]:
        return self._dataset.manual_requests

    def snapshot(self) -> SyncSnapshot:
        return SyncSnapshot(
            status=self.sync_status,
            is_dirty=self.is_dirty,
            initial_load_complete=self.initial_load_complete,
            last_sync_time=self.last_sync_time,
            active_collaborators=self.active_collaborators,
        )

    def get_all_items(self) -> list[Item]:
        return [item for sheet in self._dataset.sheets for item in sheet.items]

    def get_sheet(self, sheet_id: str) -> Sheet | None:
        return next((sheet for sheet in self._dataset.sheets if sheet.id == sheet_id), None)

    def get_sheet_items(self, sheet_id: str) -> list[Item]:
        sheet = self.get_sheet(sheet_id)
        return list(sheet.items) if sheet else []

    def find_item(self, item_id: str) -> Item | None:
        return next((item for item in self.get_all_items() if item.id == item_id), None)

    def late_items(self, today: date | None = None) -> list[Item]:
        today = today or self._today()
        return [item for item in self.get_all_items() if is_late(item, today)]

    # sheet and item mutations

    def import_sheet_data(self, data: NormalizedSheetData) -> Sheet:
        self._guard()
        name = normalize_text(data.file_name)
        if not name:
            raise ValueError('Imported file needs a project name')
        items = [
            item.model_copy(
                update={
                    'id': item.id or f'{normalize_text(block.name)}-{index}-{uuid.uuid4().hex[:8]}',
                    'sheet_name': normalize_text(item.sheet_name or block.name),
                    'status': ItemStatus.PENDING,
                }
            )
            for block in data.sheets
            for index, item in enumerate(block.items)
        ]
        sheet = Sheet(id=projector.new_sheet_id(), name=name, items=items, created_date=self._created_date())
        self._install_local(Dataset(sheets=[*self.sheets, sheet], manual_requests=self.manual_requests))
        logger.info('Imported project %s with %d item(s)', name, len(items))
        return sheet

    def add_sheet(self, sheet: Sheet) -> Sheet:
        self._guard()
        if self.get_sheet(sheet.id) is not None:
            raise ValueError(f'Project {sheet.id} already exists')
        sheet = sheet.model_copy(update={'name': normalize_text(sheet.name)})
        self._install_local(Dataset(sheets=[*self.sheets, sheet], manual_requests=self.manual_requests))
        return sheet

    def remove_sheet(self, sheet_id: str, *, admin_secret: str | None) -> None:
        self._guard()
        self._require_admin_secret(admin_secret)
        sheet = self.get_sheet(sheet_id)
        if sheet is None:
            raise ValueError(f'Project {sheet_id} not found')
        removed_ids = {item.id for item in sheet.items}
        for item_id in removed_ids:
            self._audit.discard(item_id)
        dataset = Dataset(
            sheets=[existing for existing in self.sheets if existing.id != sheet_id],
            manual_requests=self.manual_requests,
        )
        self._install_local(projector.drop_orphaned_requests(dataset, removed_ids))
        logger.info('Removed project %s (%d item(s))', sheet.name, len(removed_ids))

    def rename_sheet(self, sheet_id: str, new_name: str) -> Sheet:
        self._guard()
        name = normalize_text(new_name)
        if not name:
            raise ValueError('Project name cannot be empty')
        sheet = self.get_sheet(sheet_id)
        if sheet is None:
            raise ValueError(f'Project {sheet_id} not found')
        renamed = sheet.model_copy(update={'name': name})
        sheets = [renamed if existing.id == sheet_id else existing for existing in self.sheets]
        self._install_local(Dataset(sheets=sheets, manual_requests=self.manual_requests))
        return renamed

    def update_item_status(self, item_id: str, status: ItemStatus) -> Item:
        self._guard()
        today = self._today()
        return self._update_items({item_id}, lambda item: apply_status(item, status, today))[0]

    def update_item_order_info(self, item_id: str, info: dict[str, Any]) -> Item:
        self._guard()
        cleaned = clean_info(info, ITEM_EDITABLE_FIELDS)
        today = self._today()
        return self._update_items({item_id}, lambda item: apply_order_info(item, cleaned, today))[0]

    def bulk_update_items(self, item_ids: Iterable[str], info: dict[str, Any]) -> list[Item]:
        self._guard()
        ids = set(item_ids)
        if not ids:
            raise ValueError('Select at least one item')
        fields = dict(info)
        status = fields.pop('status', None)
        cleaned = clean_info(fields, ITEM_EDITABLE_FIELDS)
        target_status = ItemStatus(status) if status is not None else None
        today = self._today()

        def _apply(item: Item) -> Item:
            updated = apply_order_info(item, cleaned, today) if cleaned else item
            if target_status is not None:
                updated = apply_status(updated, target_status, today)
            return updated

        return self._update_items(ids, _apply)

    def _update_items(self, item_ids: set[str], change: Callable[[Item], Item]) -> list[Item]:
        baselines: dict[str, Item] = {}
        updated_items: list[Item] = []
        sheets: list[Sheet] = []
        for sheet in self.sheets:
            items = []
            for item in sheet.items:
                if item.id in item_ids:
                    baselines[item.id] = item
                    item = change(item)
                    updated_items.append(item)
                items.append(item)
            sheets.append(sheet.model_copy(update={'items': items}))

        missing = item_ids - set(baselines)
        if missing:
            raise ValueError(f'Item(s) not found: {", ".join(sorted(missing))}')

        dataset = projector.project_from_items(Dataset(sheets=sheets, manual_requests=self.manual_requests), item_ids)
        self._install_local(dataset, touched=baselines)
        return updated_items

    # manual requests

    def add_manual_request(self, draft: ManualRequestDraft) -> ManualRequest:
        self._guard(REQUEST_WRITERS)
        request = projector.build_request(draft, request_id=projector.new_request_id(), timestamp=self._created_date())
        dataset = projector.project_create(self._dataset, request, created_date=self._created_date())
        self._install_local(dataset)
        logger.info('Manual request %s created for project %s', request.id, request.project)
        return projector.find_request(dataset, request.id)

    def update_manual_request(self, request_id: str, info: dict[str, Any]) -> ManualRequest:
        self._guard()
        cleaned = clean_info(info, REQUEST_EDITABLE_FIELDS)
        baseline = projector.find_mirror_item(self._dataset, request_id)
        dataset = projector.project_update(
            self._dataset,
            request_id,
            cleaned,
            today=self._today(),
            created_date=self._created_date(),
        )
        self._install_local(dataset, touched={request_id: baseline} if baseline else None)
        return projector.find_request(dataset, request_id)

    def update_manual_request_status(self, request_id: str, status: ItemStatus) -> ManualRequest:
        self._guard()
        baseline = projector.find_mirror_item(self._dataset, request_id)
        dataset = projector.project_status(
            self._dataset,
            request_id,
            ItemStatus(status),
            today=self._today(),
            created_date=self._created_date(),
        )
        self._install_local(dataset, touched={request_id: baseline} if baseline else None)
        return projector.find_request(dataset, request_id)

    def delete_manual_request(self, request_id: str) -> None:
        self._guard()
        dataset = projector.project_delete(self._dataset, request_id)
        self._audit.discard(request_id)
        self._install_local(dataset)

    # administrative

    def clear_all_data(self, *, admin_secret: str | None) -> None:
        self._guard()
        self._require_admin_secret(admin_secret)
        self._audit.cancel_all()
        self._install_local(Dataset())
        logger.warning('All procurement data cleared by %s', self.session.user_label)

    def export_all_data(self, *, admin_secret: str | None) -> BackupFile:
        self._guard()
        self._require_admin_secret(admin_secret)
        return BackupFile(filename=backup_filename(self._clock()), content=render_backup(self._dataset))

    def import_all_data(self, text: str, *, admin_secret: str | None) -> bool:
        self._guard()
        self._require_admin_secret(admin_secret)
        try:
            dataset = parse_backup(text)
        except PayloadFormatError:
            logger.warning('Rejected malformed backup import', exc_info=True)
            return False
        self._audit.cancel_all()
        self._install_local(dataset)
        logger.info('Imported backup with %d sheet(s)', len(dataset.sheets))
        return True

    def force_sync(self) -> SyncStatus:
        self._ensure_loaded()
        self._push_task.cancel()
        if self.is_dirty:
            self._push()
            return self.sync_status
        self._runner.submit(lambda: self._remote.fetch(self._document_id), self._refetch_done)
        return self.sync_status

    def _refetch_done(self, document: RemoteDocument | None, error: RemoteStoreError | None) -> None:
        if error is not None:
            logger.warning('Manual refresh failed: %s', error)
            self.sync_status = SyncStatus.OFFLINE
            return
        if self.is_dirty:
            # edited while the fetch was running
            return
        if document is not None:
            self._adopt_remote(document.payload)
        else:
            self.sync_status = SyncStatus.SYNCED
            self.last_sync_time = self._clock()

    # internals

    def _ensure_loaded(self) -> None:
        if not self.initial_load_complete:
            raise SyncNotReadyError('Initial load has not completed')

    def _guard(self, allowed: frozenset[AccessLevel] = FULL_ONLY) -> None:
        self._ensure_loaded()
        ensure_access(self.session.access_level, allowed)

    def _require_admin_secret(self, admin_secret: str | None) -> None:
        if not self.authenticator.verify_admin_secret(admin_secret):
            raise PermissionDeniedError('Administrator confirmation failed')

    def _today(self) -> date:
        return self._clock().date()

    def _created_date(self) -> str:
        return self._clock().strftime(self._created_date_format)

    def _install(self, dataset: Dataset) -> None:
        self._dataset = dataset
        try:
            self._cache.write(dataset)
        except OSError:
            logger.error('Could not persist local cache at %s', self._cache.path, exc_info=True)

    def _install_local(self, dataset: Dataset, touched: dict[str, Item] | None = None) -> None:
        for item_id, baseline in (touched or {}).items():
            self._audit.track(item_id, baseline)
        self._install(dataset)
        self.is_dirty = True
        self.sync_status = SyncStatus.PENDING
        self._push_task.schedule()

    def _commit_audit_entry(self, item_id: str, entry: AuditLogEntry) -> None:
        sheets = [
            sheet.model_copy(
                update={
                    'items': [
                        item.model_copy(update={'history': [entry, *(item.history or [])]})
                        if item.id == item_id
                        else item
                        for item in sheet.items
                    ]
                }
            )
            for sheet in self.sheets
        ]
        self._install_local(Dataset(sheets=sheets, manual_requests=self.manual_requests))

    def _can_push(self) -> bool:
        return self.session.access_level in PUSH_LEVELS

    def _push(self, *, final: bool = False) -> None:
        if not self.is_dirty:
            return
        if not self._can_push():
            logger.info('Holding local changes; level %s may not push', self.session.access_level.value)
            return
        if self._push_in_flight and not final:
            self._push_again = True
            return

        self.sync_status = SyncStatus.SAVING
        pushed_at = self._clock()
        dataset = self._dataset
        payload = encode_payload(dataset)
        runner = InlineRunner() if final else self._runner
        self._push_in_flight = True
        runner.submit(
            lambda: self._remote.upsert(self._document_id, payload, pushed_at),
            lambda _result, error: self._push_done(dataset, pushed_at, error),
        )

    def _push_done(self, dataset: Dataset, pushed_at: datetime, error: RemoteStoreError | None) -> None:
        self._push_in_flight = False
        if error is not None:
            logger.error('Push of %s failed; changes kept for retry: %s', self._document_id, error)
            self._push_again = False
            self.sync_status = SyncStatus.ERROR
            return
        self.last_sync_time = pushed_at
        if self._dataset is dataset:
            self.is_dirty = False
            self.sync_status = SyncStatus.SYNCED
            logger.debug('Pushed %s', self._document_id)
        else:
            self.sync_status = SyncStatus.PENDING
        if self._push_again:
            self._push_again = False
            self._push()

    def _on_remote_update(self, payload: Any) -> None:
        if not self.initial_load_complete:
            return
        if self.is_dirty and self._can_push():
            logger.info('Remote change ignored; local edits pending push')
            return
        if self.is_dirty:
            # this session can never push what it holds; the shared document wins
            logger.info('Dropping local changes that level %s may not push', self.session.access_level.value)
        self._adopt_remote(payload)

    def _adopt_remote(self, payload: Any) -> None:
        try:
            dataset = decode_payload(payload)
        except PayloadFormatError:
            logger.warning('Ignoring malformed remote payload', exc_info=True)
            return
        pending = {record_id: self.find_item(record_id) for record_id in self._audit.pending_records()}
        self._install(dataset)
        for record_id, before in pending.items():
            # another collaborator touched it; their edits are not ours to record
            if self.find_item(record_id) != before:
                self._audit.discard(record_id)
        self._push_task.cancel()
        self.is_dirty = False
        self.last_sync_time = self._clock()
        self.sync_status = SyncStatus.SYNCED

    def _on_presence_count(self, count: int) -> None:
        self.active_collaborators = count
