from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from app.schemas import Dataset

LEGACY_SCHEMA_VERSION = 1
CURRENT_SCHEMA_VERSION = 2

_LEGACY_STATUS = {
    'PENDENTE': 'PENDING',
    'EM ORCAMENTO': 'PENDING',
    'COMPRADO': 'PURCHASED',
    'ENTREGUE': 'DELIVERED',
}
_LEGACY_TYPE = {
    'FABRICADO': 'MANUFACTURED',
    'COMERCIAL': 'COMMERCIAL',
}
_LEGACY_SHEET_KEYS = {'nome': 'name', 'data_upload': 'createdDate'}


class PayloadFormatError(ValueError):
    pass


@dataclass(frozen=True)
class DatasetEnvelope:
    version: int
    body: dict[str, Any]


def detect_envelope(raw: Any) -> DatasetEnvelope:
    if isinstance(raw, list):
        return DatasetEnvelope(version=LEGACY_SCHEMA_VERSION, body={'sheets': raw})
    if isinstance(raw, dict) and isinstance(raw.get('sheets', []), list):
        if 'sheets' not in raw and 'manualRequests' not in raw:
            raise PayloadFormatError('Payload has neither sheets nor manualRequests')
        return DatasetEnvelope(version=CURRENT_SCHEMA_VERSION, body=raw)
    raise PayloadFormatError(f'Unrecognised payload shape: {type(raw).__name__}')


def _upgrade_record(record: Any) -> Any:
    if not isinstance(record, dict):
        return record
    upgraded = dict(record)
    status = upgraded.get('status')
    if isinstance(status, str) and status.upper() in _LEGACY_STATUS:
        upgraded['status'] = _LEGACY_STATUS[status.upper()]
    item_type = upgraded.get('type')
    if isinstance(item_type, str) and item_type.upper() in _LEGACY_TYPE:
        upgraded['type'] = _LEGACY_TYPE[item_type.upper()]
    return upgraded


def _upgrade_sheet(sheet: Any) -> Any:
    if not isinstance(sheet, dict):
        return sheet
    upgraded = {_LEGACY_SHEET_KEYS.get(key, key): value for key, value in sheet.items()}
    items = upgraded.get('items')
    if isinstance(items, list):
        upgraded['items'] = [_upgrade_record(item) for item in items]
    return upgraded


def migrate(envelope: DatasetEnvelope) -> DatasetEnvelope:
    """Bring any known payload version up to the current schema."""
    body = envelope.body
    sheets = body.get('sheets') or []
    requests = body.get('manualRequests') or []
    if not isinstance(requests, list):
        raise PayloadFormatError('manualRequests must be a list')
    return DatasetEnvelope(
        version=CURRENT_SCHEMA_VERSION,
        body={
            'sheets': [_upgrade_sheet(sheet) for sheet in sheets],
            'manualRequests': [_upgrade_record(request) for request in requests],
        },
    )


def decode_payload(raw: Any) -> Dataset:
    envelope = migrate(detect_envelope(raw))
    try:
        return Dataset.model_validate(envelope.body)
    except ValidationError as exc:
        raise PayloadFormatError(f'Invalid payload: {exc.error_count()} validation error(s)') from exc


def encode_payload(dataset: Dataset) -> dict[str, Any]:
    body = dataset.to_wire()
    body.setdefault('sheets', [])
    body.setdefault('manualRequests', [])
    return body


def parse_backup(text: str) -> Dataset:
    try:
        raw = json.loads(text)
    except (TypeError, json.JSONDecodeError) as exc:
        raise PayloadFormatError('Backup is not valid JSON') from exc
    return decode_payload(raw)


def render_backup(dataset: Dataset) -> str:
    return json.dumps(encode_payload(dataset), indent=2, ensure_ascii=False)


def backup_filename(now: datetime) -> str:
    return f'BACKUP_{now:%Y%m%d_%H%M%S}.json'
