from __future__ import annotations

from datetime import date
from typing import Any, TypeVar

from app.models import ItemStatus, ItemType
from app.schemas import Item, ManualRequest
from app.services.text_utils import clean_optional, is_blank, parse_date

TRecord = TypeVar('TRecord', Item, ManualRequest)

DATE_FIELDS = frozenset({'expected_arrival', 'actual_arrival_date'})
OPTIONAL_TEXT_FIELDS = frozenset({'supplier', 'order_number', 'invoice_number'})

ITEM_EDITABLE_FIELDS = frozenset(
    {
        'assembly',
        'part_number',
        'description',
        'quantity',
        'unit',
        'type',
        'supplier',
        'brand',
        'order_number',
        'expected_arrival',
        'invoice_number',
        'actual_arrival_date',
    }
)
REQUEST_EDITABLE_FIELDS = frozenset(
    {
        'code',
        'description',
        'quantity',
        'brand',
        'type',
        'order_number',
        'expected_arrival',
        'invoice_number',
        'actual_arrival_date',
    }
)


def clean_info(info: dict[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
    unknown = set(info) - allowed
    if unknown:
        raise ValueError(f'Unsupported field(s): {", ".join(sorted(unknown))}')

    cleaned: dict[str, Any] = {}
    for field, value in info.items():
        if field in DATE_FIELDS:
            if is_blank(value):
                cleaned[field] = None
                continue
            parsed = parse_date(str(value))
            if parsed is None:
                raise ValueError(f'Invalid date for {field}: {value}')
            cleaned[field] = parsed
        elif field in OPTIONAL_TEXT_FIELDS:
            cleaned[field] = clean_optional(value)
        elif field == 'quantity':
            try:
                quantity = int(value)
            except (TypeError, ValueError) as exc:
                raise ValueError('Quantity must be a whole number') from exc
            if quantity < 0:
                raise ValueError('Quantity cannot be negative')
            cleaned[field] = quantity
        elif field == 'type':
            cleaned[field] = ItemType(value)
        else:
            cleaned[field] = '' if value is None else str(value).strip()
    return cleaned


def _backfill_arrival(record: TRecord, today: date) -> TRecord:
    if record.status == ItemStatus.DELIVERED and not record.actual_arrival_date:
        return record.model_copy(update={'actual_arrival_date': today.isoformat()})
    return record


def apply_order_info(record: TRecord, info: dict[str, Any], today: date) -> TRecord:
    """Merge already-cleaned fields into ``record`` and derive its status."""
    status = record.status
    if 'invoice_number' in info:
        if not is_blank(info['invoice_number']):
            status = ItemStatus.DELIVERED
        else:
            order_number = info.get('order_number', record.order_number)
            status = ItemStatus.PURCHASED if not is_blank(order_number) else ItemStatus.PENDING
    elif 'order_number' in info and record.status != ItemStatus.DELIVERED:
        status = ItemStatus.PURCHASED if not is_blank(info['order_number']) else ItemStatus.PENDING

    updated = record.model_copy(update={**info, 'status': status})
    return _backfill_arrival(updated, today)


def apply_status(record: TRecord, status: ItemStatus | str, today: date) -> TRecord:
    updated = record.model_copy(update={'status': ItemStatus(status)})
    return _backfill_arrival(updated, today)


def is_late(item: Item | ManualRequest, today: date) -> bool:
    if item.status != ItemStatus.PURCHASED or not item.expected_arrival:
        return False
    return item.expected_arrival < today.isoformat()
