from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import date
from typing import Any

from app.models import ItemStatus
from app.schemas import Dataset, Item, ManualRequest, ManualRequestDraft, Sheet
from app.services.status_rules import apply_order_info, apply_status
from app.services.text_utils import normalize_text

MANUAL_SHEET_MARKER = 'MANUAL REQUEST'
ASSEMBLY_PLACEHOLDER = '-'
PART_NUMBER_PLACEHOLDER = '-'

MIRRORED_FIELDS = ('status', 'order_number', 'invoice_number', 'expected_arrival', 'actual_arrival_date')
NORMALIZED_REQUEST_FIELDS = ('code', 'description', 'brand')
# request field -> mirror item field, for descriptive edits
_DESCRIPTIVE_FIELDS = {
    'description': 'description',
    'quantity': 'quantity',
    'brand': 'brand',
    'type': 'type',
}


def new_sheet_id() -> str:
    return f'PRJ-{uuid.uuid4().hex[:12]}'


def new_request_id() -> str:
    return f'REQ-{uuid.uuid4().hex[:12]}'


def build_request(draft: ManualRequestDraft, *, request_id: str, timestamp: str) -> ManualRequest:
    project = normalize_text(draft.project)
    description = normalize_text(draft.description)
    if not project:
        raise ValueError('Project is required')
    if not description:
        raise ValueError('Description is required')
    return ManualRequest(
        id=request_id,
        project=project,
        code=normalize_text(draft.code),
        description=description,
        quantity=draft.quantity,
        brand=normalize_text(draft.brand),
        type=draft.type,
        timestamp=timestamp,
        status=ItemStatus.PENDING,
    )


def mirror_item_for(request: ManualRequest) -> Item:
    return Item(
        id=request.id,
        sheet_name=MANUAL_SHEET_MARKER,
        assembly=ASSEMBLY_PLACEHOLDER,
        part_number=request.code or PART_NUMBER_PLACEHOLDER,
        description=request.description,
        quantity=request.quantity,
        unit='UN',
        type=request.type,
        brand=request.brand or None,
        status=request.status,
        order_number=request.order_number,
        expected_arrival=request.expected_arrival,
        invoice_number=request.invoice_number,
        actual_arrival_date=request.actual_arrival_date,
    )


def find_request(dataset: Dataset, request_id: str) -> ManualRequest | None:
    return next((request for request in dataset.manual_requests if request.id == request_id), None)


def find_mirror_item(dataset: Dataset, request_id: str) -> Item | None:
    for sheet in dataset.sheets:
        for item in sheet.items:
            if item.id == request_id:
                return item
    return None


def _place_mirror(
    sheets: list[Sheet],
    request: ManualRequest,
    *,
    created_date: str,
    sheet_id_factory: Callable[[], str],
) -> list[Sheet]:
    mirror = mirror_item_for(request)
    target = normalize_text(request.project)
    placed: list[Sheet] = []
    found = False
    for sheet in sheets:
        if not found and normalize_text(sheet.name) == target:
            sheet = sheet.model_copy(update={'items': [mirror, *sheet.items]})
            found = True
        placed.append(sheet)
    if not found:
        placed.append(Sheet(id=sheet_id_factory(), name=target, items=[mirror], created_date=created_date))
    return placed


def project_create(
    dataset: Dataset,
    request: ManualRequest,
    *,
    created_date: str,
    sheet_id_factory: Callable[[], str] = new_sheet_id,
) -> Dataset:
    if find_request(dataset, request.id) is not None:
        raise ValueError(f'Manual request {request.id} already exists')
    request = request.model_copy(update={'status': ItemStatus.PENDING})
    sheets = _place_mirror(dataset.sheets, request, created_date=created_date, sheet_id_factory=sheet_id_factory)
    return Dataset(sheets=sheets, manual_requests=[*dataset.manual_requests, request])


def normalize_request_info(info: dict[str, Any]) -> dict[str, Any]:
    """Bring free-text request fields to the same shape ``build_request`` gives them."""
    normalized = {
        field: normalize_text(value) if field in NORMALIZED_REQUEST_FIELDS else value for field, value in info.items()
    }
    if 'description' in normalized and not normalized['description']:
        raise ValueError('Description is required')
    return normalized


def _sync_mirror(item: Item, request: ManualRequest, descriptive: dict[str, Any]) -> Item:
    update: dict[str, Any] = {field: getattr(request, field) for field in MIRRORED_FIELDS}
    for request_field, item_field in _DESCRIPTIVE_FIELDS.items():
        if request_field in descriptive:
            value = getattr(request, request_field)
            update[item_field] = (value or None) if item_field == 'brand' else value
    if 'code' in descriptive:
        update['part_number'] = request.code or PART_NUMBER_PLACEHOLDER
    return item.model_copy(update=update)


def _replace_request_and_mirror(
    dataset: Dataset,
    request: ManualRequest,
    descriptive: dict[str, Any],
    *,
    created_date: str,
    sheet_id_factory: Callable[[], str],
) -> Dataset:
    requests = [request if existing.id == request.id else existing for existing in dataset.manual_requests]
    if find_mirror_item(dataset, request.id) is None:
        sheets = _place_mirror(dataset.sheets, request, created_date=created_date, sheet_id_factory=sheet_id_factory)
        return Dataset(sheets=sheets, manual_requests=requests)

    sheets = [
        sheet.model_copy(
            update={
                'items': [
                    _sync_mirror(item, request, descriptive) if item.id == request.id else item
                    for item in sheet.items
                ]
            }
        )
        for sheet in dataset.sheets
    ]
    return Dataset(sheets=sheets, manual_requests=requests)


def project_update(
    dataset: Dataset,
    request_id: str,
    info: dict[str, Any],
    *,
    today: date,
    created_date: str,
    sheet_id_factory: Callable[[], str] = new_sheet_id,
) -> Dataset:
    """Apply cleaned ``info`` to a request and carry the result onto its mirror item."""
    request = find_request(dataset, request_id)
    if request is None:
        raise ValueError(f'Manual request {request_id} not found')
    info = normalize_request_info(info)
    updated = apply_order_info(request, info, today)
    return _replace_request_and_mirror(
        dataset,
        updated,
        info,
        created_date=created_date,
        sheet_id_factory=sheet_id_factory,
    )


def project_status(
    dataset: Dataset,
    request_id: str,
    status: ItemStatus,
    *,
    today: date,
    created_date: str,
    sheet_id_factory: Callable[[], str] = new_sheet_id,
) -> Dataset:
    request = find_request(dataset, request_id)
    if request is None:
        raise ValueError(f'Manual request {request_id} not found')
    updated = apply_status(request, status, today)
    return _replace_request_and_mirror(
        dataset,
        updated,
        {},
        created_date=created_date,
        sheet_id_factory=sheet_id_factory,
    )


def project_delete(dataset: Dataset, request_id: str) -> Dataset:
    if find_request(dataset, request_id) is None:
        raise ValueError(f'Manual request {request_id} not found')
    sheets = [
        sheet.model_copy(update={'items': [item for item in sheet.items if item.id != request_id]})
        for sheet in dataset.sheets
    ]
    requests = [request for request in dataset.manual_requests if request.id != request_id]
    return Dataset(sheets=sheets, manual_requests=requests)


def project_from_items(dataset: Dataset, item_ids: set[str]) -> Dataset:
    """Copy mirrored fields from edited mirror items back onto their requests."""
    affected = {request.id for request in dataset.manual_requests} & item_ids
    if not affected:
        return dataset
    requests = []
    for request in dataset.manual_requests:
        item = find_mirror_item(dataset, request.id) if request.id in affected else None
        if item is not None:
            request = request.model_copy(update={field: getattr(item, field) for field in MIRRORED_FIELDS})
        requests.append(request)
    return Dataset(sheets=dataset.sheets, manual_requests=requests)


def drop_orphaned_requests(dataset: Dataset, removed_item_ids: set[str]) -> Dataset:
    if not removed_item_ids:
        return dataset
    requests = [request for request in dataset.manual_requests if request.id not in removed_item_ids]
    return Dataset(sheets=dataset.sheets, manual_requests=requests)
