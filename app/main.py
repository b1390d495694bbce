import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from app.auth import PermissionDeniedError, SharedSecretAuthenticator
from app.config import settings
from app.logging_config import setup_logging
from app.routers import manual_requests, session, sheets, sync
from app.security.headers import install_security_headers
from app.security.sessions import SessionContext
from app.services.local_cache import LocalCache
from app.services.provider_factory import get_remote_store
from app.services.remote_calls import RemoteCallRunner, ThreadPoolRunner
from app.services.sql_remote_store import SqlRemoteStore
from app.services.sync_engine import SyncEngine, SyncNotReadyError
from app.services.timers import PeriodicTask, TimerBackend

logger = logging.getLogger(__name__)


def build_engine(timers: TimerBackend, runner: RemoteCallRunner | None = None) -> SyncEngine:
    remote = get_remote_store()
    if isinstance(remote, SqlRemoteStore):
        from app.db import init_db

        init_db()
    return SyncEngine(
        remote=remote,
        cache=LocalCache(settings.cache_dir, settings.storage_key),
        session=SessionContext(display_name=settings.display_name),
        authenticator=SharedSecretAuthenticator.from_settings(settings),
        timers=timers,
        document_id=settings.document_id,
        presence_channel=settings.presence_channel,
        push_delay=settings.push_debounce_seconds,
        audit_delay=settings.audit_debounce_seconds,
        created_date_format=settings.created_date_format,
        runner=runner,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    loop = asyncio.get_running_loop()
    # one worker keeps pushes and polls in submission order
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='remote-store')
    engine = build_engine(loop, runner=ThreadPoolRunner(loop, executor))
    app.state.sync_engine = engine
    app.state.session = engine.session
    app.state.authenticator = engine.authenticator
    engine.start()

    poller = PeriodicTask(loop, settings.change_poll_seconds, engine.poll_remote)
    poller.start()
    try:
        yield
    finally:
        poller.stop()
        engine.shutdown()
        executor.shutdown(wait=True)
        logger.info('Sync engine stopped')


app = FastAPI(title='Procurement Sync', lifespan=lifespan)

install_security_headers(app)

app.include_router(session.router)
app.include_router(sheets.router)
app.include_router(manual_requests.router)
app.include_router(sync.router)


@app.exception_handler(PermissionDeniedError)
async def permission_denied_handler(request: Request, exc: PermissionDeniedError):
    return JSONResponse({'detail': exc.message}, status_code=403)


@app.exception_handler(SyncNotReadyError)
async def not_ready_handler(request: Request, exc: SyncNotReadyError):
    return JSONResponse({'detail': str(exc)}, status_code=503)


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
