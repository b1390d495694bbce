from __future__ import annotations

import asyncio
import tempfile
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from types import SimpleNamespace

from app.auth import AccessLevel, PermissionDeniedError
from app.models import ItemStatus, SyncStatus
from app.schemas import Dataset, Item, ManualRequestDraft, NormalizedSheet, NormalizedSheetData, Sheet
from app.security.sessions import SessionContext
from app.services.local_cache import LocalCache
from app.services.memory_remote_store import InMemoryRemoteStore
from app.services.payload_codec import encode_payload
from app.services.remote_calls import ThreadPoolRunner
from app.services.remote_store import RemoteDocument
from app.services.sync_engine import SyncEngine, SyncNotReadyError
from app.services.timers import ManualTimerBackend

DOC = 'procurement-test'
CHANNEL = 'presence-test'
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
ADMIN = 'admin-secret'


def _authenticator() -> SimpleNamespace:
    return SimpleNamespace(
        authenticate=lambda secret: AccessLevel.NONE,
        verify_admin_secret=lambda secret: secret == ADMIN,
    )


def _seed_dataset() -> Dataset:
    items = [
        Item(id='I-1', sheet_name='BASE', description='CHAPA', quantity=2),
        Item(id='I-2', sheet_name='BASE', description='PARAFUSO', quantity=8),
    ]
    return Dataset(sheets=[Sheet(id='PRJ-1', name='LINHA 1', items=items, created_date='01/03/2026')])


class SyncEngineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.cache = LocalCache(tmp.name, 'procurement_test')
        self.remote = InMemoryRemoteStore()
        self.timers = ManualTimerBackend()

    def _engine(self, level: AccessLevel = AccessLevel.FULL, display_name: str | None = 'Ana') -> SyncEngine:
        return SyncEngine(
            remote=self.remote,
            cache=self.cache,
            session=SessionContext(access_level=level, display_name=display_name),
            authenticator=_authenticator(),
            timers=self.timers,
            document_id=DOC,
            presence_channel=CHANNEL,
            push_delay=1.5,
            audit_delay=10.0,
            clock=lambda: NOW,
        )

    def _seed_remote(self, dataset: Dataset | None = None) -> None:
        self.remote.publish_external(DOC, encode_payload(dataset or _seed_dataset()), NOW)


class LoadTests(SyncEngineTestCase):
    def test_empty_backend_and_cache(self) -> None:
        engine = self._engine()
        self.assertEqual(engine.start(), SyncStatus.SYNCED)
        self.assertEqual(engine.dataset, Dataset())
        self.assertFalse(engine.is_dirty)
        self.assertEqual(engine.last_sync_time, NOW)
        self.timers.run_all()
        self.assertEqual(self.remote.upsert_calls, [])

    def test_remote_document_wins_and_is_cached(self) -> None:
        self._seed_remote()
        self.cache.write(Dataset(sheets=[Sheet(id='PRJ-OLD', name='STALE')]))

        engine = self._engine()
        engine.start()

        self.assertEqual(engine.dataset, _seed_dataset())
        self.assertEqual(self.cache.read(), _seed_dataset())
        self.assertEqual(engine.active_collaborators, 1)

    def test_legacy_remote_payload_is_upgraded(self) -> None:
        self.remote.publish_external(DOC, [{'id': 'PRJ-1', 'nome': 'LINHA 1', 'items': []}], NOW)

        engine = self._engine()
        engine.start()

        self.assertEqual(engine.sheets[0].name, 'LINHA 1')
        self.assertEqual(engine.manual_requests, [])

    def test_offline_falls_back_to_cache(self) -> None:
        self.cache.write(_seed_dataset())
        self.remote.reads_available = False

        engine = self._engine()

        self.assertEqual(engine.start(), SyncStatus.OFFLINE)
        self.assertEqual(engine.dataset, _seed_dataset())
        self.assertTrue(engine.initial_load_complete)

    def test_cache_seeds_empty_backend(self) -> None:
        self.cache.write(_seed_dataset())

        engine = self._engine()

        self.assertEqual(engine.start(), SyncStatus.PENDING)
        self.timers.advance(1.5)
        self.assertEqual(self.remote.upsert_calls, [(DOC, encode_payload(_seed_dataset()))])
        self.assertEqual(engine.sync_status, SyncStatus.SYNCED)

    def test_mutations_before_load_are_rejected(self) -> None:
        engine = self._engine()
        with self.assertRaises(SyncNotReadyError):
            engine.rename_sheet('PRJ-1', 'X')
        with self.assertRaises(SyncNotReadyError):
            engine.force_sync()


class PushTests(SyncEngineTestCase):
    def test_burst_of_edits_is_pushed_once_with_final_state(self) -> None:
        self._seed_remote()
        engine = self._engine()
        engine.start()

        engine.rename_sheet('PRJ-1', 'linha um')
        self.timers.advance(1.0)
        engine.update_item_status('I-1', ItemStatus.PURCHASED)
        self.timers.advance(1.0)
        engine.update_item_order_info('I-2', {'order_number': 'PO-9'})
        self.assertEqual(engine.sync_status, SyncStatus.PENDING)
        self.assertEqual(self.remote.upsert_calls, [])

        self.timers.advance(1.5)

        self.assertEqual(len(self.remote.upsert_calls), 1)
        self.assertEqual(self.remote.upsert_calls[0], (DOC, encode_payload(engine.dataset)))
        self.assertEqual(engine.sheets[0].name, 'LINHA UM')
        self.assertFalse(engine.is_dirty)
        self.assertEqual(engine.sync_status, SyncStatus.SYNCED)

    def test_push_failure_keeps_changes_for_retry(self) -> None:
        self._seed_remote()
        engine = self._engine()
        engine.start()
        self.remote.writes_available = False

        engine.update_item_status('I-1', ItemStatus.PURCHASED)
        self.timers.advance(1.5)

        self.assertEqual(engine.sync_status, SyncStatus.ERROR)
        self.assertTrue(engine.is_dirty)
        self.assertEqual(engine.find_item('I-1').status, ItemStatus.PURCHASED)

        self.remote.writes_available = True
        self.assertEqual(engine.force_sync(), SyncStatus.SYNCED)
        self.assertEqual(len(self.remote.upsert_calls), 1)
        self.assertFalse(engine.is_dirty)

    def test_force_sync_refetches_when_clean(self) -> None:
        self._seed_remote()
        engine = self._engine()
        engine.start()
        self.remote.documents[DOC] = RemoteDocument(DOC, encode_payload(Dataset()), 2, NOW)

        self.assertEqual(engine.force_sync(), SyncStatus.SYNCED)
        self.assertEqual(engine.dataset, Dataset())

    def test_shutdown_pushes_pending_changes(self) -> None:
        self._seed_remote()
        engine = self._engine()
        engine.start()

        engine.update_item_order_info('I-1', {'supplier': 'ACME'})
        engine.shutdown()

        self.assertEqual(len(self.remote.upsert_calls), 1)
        pushed_item = self.remote.upsert_calls[0][1]['sheets'][0]['items'][0]
        self.assertEqual(pushed_item['supplier'], 'ACME')
        self.assertEqual(len(pushed_item['history']), 1)
        self.assertEqual(engine.active_collaborators, 1)
        counts = []
        self.remote.subscribe_to_presence(CHANNEL, counts.append)
        self.assertEqual(counts, [0])


class RemoteUpdateTests(SyncEngineTestCase):
    def test_clean_engine_adopts_remote_change(self) -> None:
        self._seed_remote()
        engine = self._engine()
        engine.start()
        changed = Dataset(sheets=[Sheet(id='PRJ-2', name='OUTRA')])

        self._seed_remote(changed)

        self.assertEqual(engine.dataset, changed)
        self.assertEqual(self.cache.read(), changed)

    def test_dirty_engine_ignores_remote_change(self) -> None:
        self._seed_remote()
        engine = self._engine()
        engine.start()
        engine.rename_sheet('PRJ-1', 'LOCAL')

        self._seed_remote(Dataset(sheets=[Sheet(id='PRJ-2', name='REMOTE')]))

        self.assertEqual(engine.sheets[0].name, 'LOCAL')
        self.timers.advance(1.5)
        self.assertEqual(self.remote.documents[DOC].payload['sheets'][0]['name'], 'LOCAL')

    def test_malformed_remote_change_is_ignored(self) -> None:
        self._seed_remote()
        engine = self._engine()
        engine.start()

        self.remote.publish_external(DOC, {'sheets': [{'bogus': True}]}, NOW)

        self.assertEqual(engine.dataset, _seed_dataset())


class PermissionTests(SyncEngineTestCase):
    def test_view_level_cannot_mutate(self) -> None:
        self._seed_remote()
        engine = self._engine(level=AccessLevel.VIEW)
        engine.start()
        before = encode_payload(engine.dataset)

        attempts = [
            lambda: engine.rename_sheet('PRJ-1', 'X'),
            lambda: engine.update_item_status('I-1', ItemStatus.DELIVERED),
            lambda: engine.update_item_order_info('I-1', {'order_number': 'PO-1'}),
            lambda: engine.bulk_update_items(['I-1'], {'status': 'PURCHASED'}),
            lambda: engine.add_manual_request(ManualRequestDraft(project='LINHA 1', description='X')),
            lambda: engine.clear_all_data(admin_secret=ADMIN),
        ]
        for attempt in attempts:
            with self.assertRaises(PermissionDeniedError):
                attempt()

        self.assertEqual(encode_payload(engine.dataset), before)
        self.assertFalse(engine.is_dirty)
        self.assertEqual(self.timers.pending_count, 0)

    def test_requester_can_only_create_requests(self) -> None:
        self._seed_remote()
        engine = self._engine(level=AccessLevel.REQUESTER)
        engine.start()

        request = engine.add_manual_request(ManualRequestDraft(project='LINHA 1', description='Luva'))
        with self.assertRaises(PermissionDeniedError):
            engine.update_manual_request_status(request.id, ItemStatus.PURCHASED)

        self.timers.advance(1.5)
        self.assertEqual(len(self.remote.upsert_calls), 1)

    def test_anonymous_session_is_denied(self) -> None:
        engine = self._engine(level=AccessLevel.NONE)
        engine.start()
        with self.assertRaises(PermissionDeniedError):
            engine.add_sheet(Sheet(id='PRJ-9', name='X'))

    def test_destructive_operations_need_admin_secret(self) -> None:
        self._seed_remote()
        engine = self._engine()
        engine.start()

        with self.assertRaises(PermissionDeniedError):
            engine.clear_all_data(admin_secret='wrong')
        with self.assertRaises(PermissionDeniedError):
            engine.remove_sheet('PRJ-1', admin_secret=None)
        with self.assertRaises(PermissionDeniedError):
            engine.export_all_data(admin_secret='')

        self.assertEqual(engine.dataset, _seed_dataset())
        self.assertFalse(engine.is_dirty)


class MutationTests(SyncEngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._seed_remote()
        self.engine = self._engine()
        self.engine.start()

    def test_import_sheet_data(self) -> None:
        data = NormalizedSheetData(
            file_name='Linha Nova.xlsx',
            sheets=[
                NormalizedSheet(
                    name='Estrutura',
                    items=[Item(id='', sheet_name='', description='VIGA', status=ItemStatus.DELIVERED)],
                )
            ],
        )

        sheet = self.engine.import_sheet_data(data)

        self.assertEqual(sheet.name, 'LINHA NOVA.XLSX')
        self.assertEqual(sheet.created_date, '10/03/2026')
        self.assertEqual(sheet.items[0].sheet_name, 'ESTRUTURA')
        self.assertEqual(sheet.items[0].status, ItemStatus.PENDING)
        self.assertTrue(sheet.items[0].id.startswith('ESTRUTURA-0-'))
        self.assertEqual(len(self.engine.sheets), 2)

    def test_add_and_rename_validation(self) -> None:
        with self.assertRaises(ValueError):
            self.engine.add_sheet(Sheet(id='PRJ-1', name='DUP'))
        with self.assertRaises(ValueError):
            self.engine.rename_sheet('PRJ-1', '   ')
        with self.assertRaises(ValueError):
            self.engine.rename_sheet('PRJ-404', 'X')
        self.assertFalse(self.engine.is_dirty)

    def test_invoice_marks_item_delivered(self) -> None:
        item = self.engine.update_item_order_info('I-1', {'invoice_number': 'NF-1'})
        self.assertEqual(item.status, ItemStatus.DELIVERED)
        self.assertEqual(item.actual_arrival_date, '2026-03-10')

    def test_bulk_update(self) -> None:
        items = self.engine.bulk_update_items(['I-1', 'I-2'], {'status': 'PURCHASED', 'supplier': 'ACME'})
        self.assertEqual({item.status for item in items}, {ItemStatus.PURCHASED})
        self.assertEqual({item.supplier for item in items}, {'ACME'})

        with self.assertRaises(ValueError):
            self.engine.bulk_update_items(['I-1', 'I-404'], {'status': 'DELIVERED'})
        with self.assertRaises(ValueError):
            self.engine.bulk_update_items([], {'status': 'DELIVERED'})
        self.assertEqual(self.engine.find_item('I-1').status, ItemStatus.PURCHASED)

    def test_late_items(self) -> None:
        self.engine.update_item_order_info('I-1', {'order_number': 'PO-1', 'expected_arrival': '2026-03-01'})
        self.engine.update_item_order_info('I-2', {'order_number': 'PO-2', 'expected_arrival': '2026-04-01'})
        self.assertEqual([item.id for item in self.engine.late_items()], ['I-1'])

    def test_audit_entry_is_committed_after_quiet_window(self) -> None:
        self.engine.update_item_status('I-1', ItemStatus.PURCHASED)
        self.engine.update_item_order_info('I-1', {'order_number': 'PO-1'})
        self.timers.advance(10)

        history = self.engine.find_item('I-1').history
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].user, 'Ana')
        self.assertEqual(history[0].changes['status'], {'from': 'PENDING', 'to': 'PURCHASED'})
        self.assertEqual(history[0].changes['orderNumber'], {'from': None, 'to': 'PO-1'})

        self.timers.advance(1.5)
        self.assertEqual(self.remote.documents[DOC].payload['sheets'][0]['items'][0]['history'][0]['user'], 'Ana')

    def test_manual_request_lifecycle(self) -> None:
        request = self.engine.add_manual_request(
            ManualRequestDraft(project='Linha 1', description='Luva nitrilica', quantity=3)
        )
        self.assertEqual(request.timestamp, '10/03/2026')
        self.assertEqual(self.engine.sheets[0].items[0].id, request.id)

        updated = self.engine.update_manual_request(request.id, {'order_number': 'PO-3'})
        self.assertEqual(updated.status, ItemStatus.PURCHASED)
        self.assertEqual(self.engine.find_item(request.id).order_number, 'PO-3')

        delivered = self.engine.update_manual_request_status(request.id, ItemStatus.DELIVERED)
        self.assertEqual(self.engine.find_item(request.id).status, delivered.status)

        self.engine.update_item_order_info(request.id, {'invoice_number': 'NF-3'})
        self.assertEqual(self.engine.manual_requests[0].invoice_number, 'NF-3')

        self.engine.delete_manual_request(request.id)
        self.assertEqual(self.engine.manual_requests, [])
        self.assertIsNone(self.engine.find_item(request.id))

    def test_remove_sheet_drops_its_manual_requests(self) -> None:
        request = self.engine.add_manual_request(ManualRequestDraft(project='LINHA 1', description='LUVA'))
        other = self.engine.add_manual_request(ManualRequestDraft(project='LINHA 2', description='FITA'))

        self.engine.remove_sheet('PRJ-1', admin_secret=ADMIN)

        self.assertEqual([r.id for r in self.engine.manual_requests], [other.id])
        self.assertIsNone(self.engine.find_item(request.id))

    def test_export_then_import_round_trip(self) -> None:
        self.engine.add_manual_request(ManualRequestDraft(project='LINHA 1', description='LUVA'))
        original = self.engine.dataset

        backup = self.engine.export_all_data(admin_secret=ADMIN)
        self.assertEqual(backup.filename, 'BACKUP_20260310_120000.json')

        self.engine.clear_all_data(admin_secret=ADMIN)
        self.assertEqual(self.engine.dataset, Dataset())

        self.assertTrue(self.engine.import_all_data(backup.content, admin_secret=ADMIN))
        self.assertEqual(self.engine.dataset, original)

    def test_malformed_import_changes_nothing(self) -> None:
        before = self.engine.dataset

        self.assertFalse(self.engine.import_all_data('{"nope": 1}', admin_secret=ADMIN))
        self.assertFalse(self.engine.import_all_data('not json', admin_secret=ADMIN))

        self.assertIs(self.engine.dataset, before)
        self.assertFalse(self.engine.is_dirty)


class SessionTests(SyncEngineTestCase):
    def test_logout_pushes_pending_history(self) -> None:
        self._seed_remote()
        engine = self._engine()
        engine.start()
        engine.update_item_status('I-1', ItemStatus.PURCHASED)
        self.timers.advance(2)
        self.assertEqual(len(self.remote.upsert_calls), 1)

        engine.logout()

        self.assertEqual(engine.session.access_level, AccessLevel.NONE)
        self.assertFalse(engine.is_dirty)
        self.assertEqual(len(self.remote.upsert_calls), 2)
        pushed_item = self.remote.upsert_calls[1][1]['sheets'][0]['items'][0]
        self.assertEqual(pushed_item['history'][0]['user'], 'Ana')

        self.timers.advance(20)
        self.remote.publish_external(DOC, encode_payload(Dataset()), NOW)
        self.assertEqual(engine.sheets, [])

    def test_signed_out_session_still_follows_remote(self) -> None:
        self._seed_remote()
        engine = self._engine()
        engine.start()
        engine.update_item_status('I-1', ItemStatus.PURCHASED)
        self.timers.advance(2)

        engine.session.logout()
        self.timers.advance(20)
        self.assertTrue(engine.is_dirty)
        self.assertEqual(len(self.remote.upsert_calls), 1)

        changed = Dataset(sheets=[Sheet(id='PRJ-2', name='OUTRA')])
        self._seed_remote(changed)

        self.assertEqual(engine.dataset, changed)
        self.assertFalse(engine.is_dirty)
        self.assertEqual(engine.sync_status, SyncStatus.SYNCED)

    def test_anonymous_start_with_cache_holds_then_yields(self) -> None:
        self.cache.write(_seed_dataset())
        engine = self._engine(AccessLevel.NONE)

        self.assertEqual(engine.start(), SyncStatus.PENDING)
        self.assertTrue(engine.is_dirty)
        self.timers.advance(2)
        self.assertEqual(self.remote.upsert_calls, [])

        changed = Dataset(sheets=[Sheet(id='PRJ-2', name='OUTRA')])
        self._seed_remote(changed)

        self.assertEqual(engine.dataset, changed)
        self.assertFalse(engine.is_dirty)

    def test_login_pushes_changes_held_while_anonymous(self) -> None:
        self.cache.write(_seed_dataset())
        engine = self._engine(AccessLevel.NONE)
        engine.start()
        self.timers.advance(2)

        engine.login(AccessLevel.FULL)
        self.assertEqual(engine.sync_status, SyncStatus.PENDING)
        self.timers.advance(1.5)

        self.assertEqual(self.remote.upsert_calls, [(DOC, encode_payload(_seed_dataset()))])
        self.assertFalse(engine.is_dirty)

    def test_switching_to_view_pushes_first(self) -> None:
        self._seed_remote()
        engine = self._engine()
        engine.start()
        engine.rename_sheet('PRJ-1', 'LOCAL')

        engine.login(AccessLevel.VIEW)

        self.assertEqual(len(self.remote.upsert_calls), 1)
        self.assertEqual(self.remote.documents[DOC].payload['sheets'][0]['name'], 'LOCAL')
        self.assertFalse(engine.is_dirty)
        self.assertEqual(engine.session.access_level, AccessLevel.VIEW)

    def test_view_login_does_not_push(self) -> None:
        self.cache.write(_seed_dataset())
        engine = self._engine(AccessLevel.NONE)
        engine.start()

        engine.login(AccessLevel.VIEW)
        self.timers.advance(5)

        self.assertEqual(self.remote.upsert_calls, [])
        self.assertTrue(engine.is_dirty)


class RemoteAdoptionHistoryTests(SyncEngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._seed_remote()
        self.engine = self._engine()
        self.engine.start()
        self.engine.update_item_status('I-1', ItemStatus.PURCHASED)
        self.timers.advance(2)
        self.assertFalse(self.engine.is_dirty)

    def test_remote_edit_to_tracked_item_is_not_credited_locally(self) -> None:
        sheet = self.engine.sheets[0]
        items = [item.model_copy(update={'supplier': 'OUTRO'}) if item.id == 'I-1' else item for item in sheet.items]
        remote_view = Dataset(sheets=[sheet.model_copy(update={'items': items})])
        self._seed_remote(remote_view)
        self.assertEqual(self.engine.find_item('I-1').supplier, 'OUTRO')

        self.timers.advance(10)

        self.assertFalse(self.engine.find_item('I-1').history)
        self.assertFalse(self.engine.is_dirty)

    def test_unrelated_remote_edit_keeps_pending_history(self) -> None:
        remote_view = Dataset(sheets=[self.engine.sheets[0].model_copy(update={'name': 'RENOMEADA'})])
        self._seed_remote(remote_view)
        self.assertEqual(self.engine.sheets[0].name, 'RENOMEADA')

        self.timers.advance(10)

        history = self.engine.find_item('I-1').history
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].user, 'Ana')


class ThreadedRunnerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.remote = InMemoryRemoteStore()
        self.remote.publish_external(DOC, encode_payload(_seed_dataset()), NOW)
        self.cache = LocalCache(tmp.name, 'procurement_threaded')

        loop = asyncio.get_running_loop()
        self.executor = ThreadPoolExecutor(max_workers=1)
        self.addCleanup(self.executor.shutdown, wait=True)
        self.engine = SyncEngine(
            remote=self.remote,
            cache=self.cache,
            session=SessionContext(access_level=AccessLevel.FULL, display_name='Ana'),
            authenticator=_authenticator(),
            timers=loop,
            document_id=DOC,
            presence_channel=CHANNEL,
            push_delay=0.01,
            audit_delay=60,
            clock=lambda: NOW,
            runner=ThreadPoolRunner(loop, self.executor),
        )
        self.engine.start()

    async def _wait_for(self, condition) -> None:
        for _ in range(200):
            if condition():
                return
            await asyncio.sleep(0.01)
        self.fail('condition not reached')

    async def test_push_runs_off_the_loop_thread(self) -> None:
        upsert_threads = []
        upsert = self.remote.upsert

        def _recording_upsert(*args):
            upsert_threads.append(threading.get_ident())
            return upsert(*args)

        self.remote.upsert = _recording_upsert

        self.engine.update_item_status('I-1', ItemStatus.PURCHASED)
        self.assertTrue(self.engine.is_dirty)
        await self._wait_for(lambda: not self.engine.is_dirty)

        self.assertEqual(len(upsert_threads), 1)
        self.assertNotEqual(upsert_threads[0], threading.get_ident())
        self.assertEqual(self.engine.sync_status, SyncStatus.SYNCED)
        self.assertEqual(self.remote.documents[DOC].payload['sheets'][0]['items'][0]['status'], 'PURCHASED')

    async def test_remote_change_from_worker_is_applied_on_loop_thread(self) -> None:
        applied_on = []
        on_remote_update = self.engine._on_remote_update

        def _recording(payload):
            applied_on.append(threading.get_ident())
            on_remote_update(payload)

        self.engine._on_remote_update = _recording
        changed = Dataset(sheets=[Sheet(id='PRJ-2', name='OUTRA')])

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self.executor, self.remote.publish_external, DOC, encode_payload(changed), NOW)
        await self._wait_for(lambda: self.engine.dataset == changed)

        self.assertEqual(applied_on, [threading.get_ident()])
        self.assertEqual(self.cache.read(), changed)
