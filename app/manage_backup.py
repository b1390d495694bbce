from __future__ import annotations

import argparse
from datetime import datetime, timezone
from pathlib import Path

from app.config import settings
from app.db import init_db
from app.services.payload_codec import (
    backup_filename,
    decode_payload,
    encode_payload,
    parse_backup,
    render_backup,
)
from app.services.provider_factory import get_remote_store
from app.services.sql_remote_store import SqlRemoteStore


def _store():
    store = get_remote_store()
    if isinstance(store, SqlRemoteStore):
        init_db()
    return store


def export_document(target: Path | None = None) -> Path:
    document = _store().fetch(settings.document_id)
    if document is None:
        raise RuntimeError(f'No document stored under {settings.document_id}')
    dataset = decode_payload(document.payload)
    path = target or Path(backup_filename(datetime.now(tz=timezone.utc)))
    path.write_text(render_backup(dataset), encoding='utf-8')
    return path


def import_document(source: Path) -> tuple[int, int]:
    dataset = parse_backup(source.read_text(encoding='utf-8'))
    _store().upsert(settings.document_id, encode_payload(dataset), datetime.now(tz=timezone.utc))
    return len(dataset.sheets), len(dataset.manual_requests)


def describe_document() -> str:
    document = _store().fetch(settings.document_id)
    if document is None:
        return f'{settings.document_id}: empty'
    dataset = decode_payload(document.payload)
    items = sum(len(sheet.items) for sheet in dataset.sheets)
    lines = [
        f'{settings.document_id}: revision {document.revision}, updated {document.updated_at.isoformat()}',
        f'  sheets={len(dataset.sheets)} items={items} manual_requests={len(dataset.manual_requests)}',
    ]
    for sheet in dataset.sheets:
        lines.append(f'  - {sheet.name} ({len(sheet.items)} item(s), created {sheet.created_date or "?"})')
    return '\n'.join(lines)


def main() -> None:
    parser = argparse.ArgumentParser(description='Export, import or inspect the shared procurement document.')
    commands = parser.add_subparsers(dest='command', required=True)

    export_parser = commands.add_parser('export', help='Write the stored document to a backup file.')
    export_parser.add_argument('--output', type=Path, default=None, help='Target file (defaults to BACKUP_<timestamp>.json).')

    import_parser = commands.add_parser('import', help='Replace the stored document with a backup file.')
    import_parser.add_argument('path', type=Path, help='Backup file produced by export.')

    commands.add_parser('show', help='Summarise the stored document.')
    args = parser.parse_args()

    if args.command == 'export':
        path = export_document(args.output)
        print(f'Backup written to {path}')
    elif args.command == 'import':
        sheets, requests = import_document(args.path)
        print(f'Backup imported: sheets={sheets}, manual_requests={requests}')
    else:
        print(describe_document())


if __name__ == '__main__':
    main()
