from fastapi import HTTPException, Request, status

from app.services.sync_engine import SyncEngine


def get_engine(request: Request) -> SyncEngine:
    engine = getattr(request.app.state, 'sync_engine', None)
    if engine is None or not engine.initial_load_complete:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail='Data is still loading')
    return engine
