from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.auth import AccessLevel
from app.dependencies import get_engine
from app.schemas import LoginPayload
from app.security.sessions import SessionContext
from app.services.sync_engine import SyncEngine

# Handlers are async so every engine call stays on the event-loop thread.
router = APIRouter(prefix='/session', tags=['session'])


def _describe(session: SessionContext) -> dict:
    return {
        'accessLevel': session.access_level.value,
        'user': session.user_label,
        'sessionKey': session.session_key,
    }


@router.post('/login')
async def login(
    payload: LoginPayload,
    request: Request,
    engine: SyncEngine = Depends(get_engine),
):
    level = request.app.state.authenticator.authenticate(payload.secret)
    if level == AccessLevel.NONE:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid access code')
    engine.login(level, payload.display_name)
    return _describe(engine.session)


@router.post('/logout')
async def logout(engine: SyncEngine = Depends(get_engine)):
    engine.logout()
    return _describe(engine.session)


@router.get('/me')
async def me(engine: SyncEngine = Depends(get_engine)):
    return _describe(engine.session)
