from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.auth import AccessLevel, require_access
from app.dependencies import get_engine
from app.schemas import AdminConfirmation, ImportPayload
from app.services.sync_engine import SyncEngine

router = APIRouter(prefix='/sync', tags=['sync'])


@router.get('/status')
async def sync_status(engine: SyncEngine = Depends(get_engine)):
    snapshot = engine.snapshot()
    return {
        'status': snapshot.status.value,
        'isDirty': snapshot.is_dirty,
        'initialLoadComplete': snapshot.initial_load_complete,
        'lastSyncTime': snapshot.last_sync_time.isoformat() if snapshot.last_sync_time else None,
        'activeCollaborators': snapshot.active_collaborators,
    }


@router.post('/retry', dependencies=[Depends(require_access(AccessLevel.FULL, AccessLevel.REQUESTER))])
async def retry(engine: SyncEngine = Depends(get_engine)):
    return {'status': engine.force_sync().value}


@router.post('/export')
async def export_backup(payload: AdminConfirmation, engine: SyncEngine = Depends(get_engine)):
    backup = engine.export_all_data(admin_secret=payload.admin_secret)
    return Response(
        content=backup.content,
        media_type='application/json',
        headers={'Content-Disposition': f'attachment; filename="{backup.filename}"'},
    )


@router.post('/import')
async def import_backup(payload: ImportPayload, engine: SyncEngine = Depends(get_engine)):
    if not engine.import_all_data(payload.content, admin_secret=payload.admin_secret):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Backup file is not valid')
    return {'sheets': len(engine.sheets), 'manualRequests': len(engine.manual_requests)}


@router.post('/clear')
async def clear_all(payload: AdminConfirmation, engine: SyncEngine = Depends(get_engine)):
    engine.clear_all_data(admin_secret=payload.admin_secret)
    return {'cleared': True}
