from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from app.dependencies import get_engine
from app.schemas import ManualRequestDraft, OrderInfoPayload, StatusPayload
from app.services.sync_engine import SyncEngine

router = APIRouter(prefix='/manual-requests', tags=['manual-requests'])


def _to_http(exc: ValueError) -> HTTPException:
    code = status.HTTP_404_NOT_FOUND if 'not found' in str(exc) else status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(exc))


@router.get('')
async def list_requests(engine: SyncEngine = Depends(get_engine)):
    return [request.to_wire() for request in engine.manual_requests]


@router.post('', status_code=status.HTTP_201_CREATED)
async def create_request(payload: ManualRequestDraft, engine: SyncEngine = Depends(get_engine)):
    try:
        request = engine.add_manual_request(payload)
    except ValueError as exc:
        raise _to_http(exc) from exc
    return request.to_wire()


@router.patch('/{request_id}')
async def update_request(request_id: str, payload: OrderInfoPayload, engine: SyncEngine = Depends(get_engine)):
    try:
        request = engine.update_manual_request(request_id, payload.changes())
    except ValueError as exc:
        raise _to_http(exc) from exc
    return request.to_wire()


@router.put('/{request_id}/status')
async def set_request_status(request_id: str, payload: StatusPayload, engine: SyncEngine = Depends(get_engine)):
    try:
        request = engine.update_manual_request_status(request_id, payload.status)
    except ValueError as exc:
        raise _to_http(exc) from exc
    return request.to_wire()


@router.delete('/{request_id}')
async def delete_request(request_id: str, engine: SyncEngine = Depends(get_engine)):
    try:
        engine.delete_manual_request(request_id)
    except ValueError as exc:
        raise _to_http(exc) from exc
    return {'deleted': request_id}
