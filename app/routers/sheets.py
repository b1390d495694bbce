from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.dependencies import get_engine
from app.schemas import (
    AdminConfirmation,
    BulkUpdatePayload,
    NormalizedSheetData,
    OrderInfoPayload,
    RenamePayload,
    Sheet,
    StatusPayload,
)
from app.services.sync_engine import SyncEngine

router = APIRouter(tags=['sheets'])


def _not_found_or_invalid(exc: ValueError) -> HTTPException:
    message = str(exc)
    if 'not found' in message:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=message)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


@router.get('/sheets')
async def list_sheets(engine: SyncEngine = Depends(get_engine)):
    return [sheet.to_wire() for sheet in engine.sheets]


@router.post('/sheets/import', status_code=status.HTTP_201_CREATED)
async def import_sheet(payload: NormalizedSheetData, engine: SyncEngine = Depends(get_engine)):
    try:
        sheet = engine.import_sheet_data(payload)
    except ValueError as exc:
        raise _not_found_or_invalid(exc) from exc
    return sheet.to_wire()


@router.post('/sheets', status_code=status.HTTP_201_CREATED)
async def add_sheet(payload: Sheet, engine: SyncEngine = Depends(get_engine)):
    try:
        sheet = engine.add_sheet(payload)
    except ValueError as exc:
        raise _not_found_or_invalid(exc) from exc
    return sheet.to_wire()


@router.get('/sheets/{sheet_id}')
async def get_sheet(sheet_id: str, engine: SyncEngine = Depends(get_engine)):
    sheet = engine.get_sheet(sheet_id)
    if sheet is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Project not found')
    return sheet.to_wire()


@router.patch('/sheets/{sheet_id}')
async def rename_sheet(sheet_id: str, payload: RenamePayload, engine: SyncEngine = Depends(get_engine)):
    try:
        sheet = engine.rename_sheet(sheet_id, payload.name)
    except ValueError as exc:
        raise _not_found_or_invalid(exc) from exc
    return sheet.to_wire()


@router.post('/sheets/{sheet_id}/delete')
async def delete_sheet(sheet_id: str, payload: AdminConfirmation, engine: SyncEngine = Depends(get_engine)):
    try:
        engine.remove_sheet(sheet_id, admin_secret=payload.admin_secret)
    except ValueError as exc:
        raise _not_found_or_invalid(exc) from exc
    return {'deleted': sheet_id}


@router.get('/items')
async def list_items(
    late_only: bool = Query(default=False, alias='lateOnly'),
    engine: SyncEngine = Depends(get_engine),
):
    items = engine.late_items() if late_only else engine.get_all_items()
    return [item.to_wire() for item in items]


@router.put('/items/{item_id}/status')
async def set_item_status(item_id: str, payload: StatusPayload, engine: SyncEngine = Depends(get_engine)):
    try:
        item = engine.update_item_status(item_id, payload.status)
    except ValueError as exc:
        raise _not_found_or_invalid(exc) from exc
    return item.to_wire()


@router.patch('/items/{item_id}')
async def update_item(item_id: str, payload: OrderInfoPayload, engine: SyncEngine = Depends(get_engine)):
    try:
        item = engine.update_item_order_info(item_id, payload.changes())
    except ValueError as exc:
        raise _not_found_or_invalid(exc) from exc
    return item.to_wire()


@router.post('/items/bulk')
async def bulk_update(payload: BulkUpdatePayload, engine: SyncEngine = Depends(get_engine)):
    try:
        items = engine.bulk_update_items(payload.item_ids, payload.changes())
    except ValueError as exc:
        raise _not_found_or_invalid(exc) from exc
    return [item.to_wire() for item in items]
