import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment variables before settings are read
load_dotenv()

from enrollment_calendar.api.router import router as api_router  # noqa: E402
from enrollment_calendar.auth.microsoft_auth import MicrosoftGraphAuth  # noqa: E402
from enrollment_calendar.exceptions import CalendarSyncError  # noqa: E402
from enrollment_calendar.services.calendar_event import CallerContext  # noqa: E402
from enrollment_calendar.services.microsoft_calendar import MicrosoftCalendarService  # noqa: E402
from enrollment_calendar.sync.activity import ActivityLogger  # noqa: E402
from enrollment_calendar.sync.engine import CalendarSyncEngine  # noqa: E402
from enrollment_calendar.sync.storage import SyncStorageManager  # noqa: E402
from enrollment_calendar.utils.config import settings  # noqa: E402

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def parse_sync_accounts(accounts: List[str]) -> List[CallerContext]:
    """Parse "tenant_id:user_id" entries into caller contexts"""
    contexts = []
    for entry in accounts:
        tenant_id, sep, user_id = entry.partition(":")
        if not sep or not tenant_id or not user_id:
            logger.warning(f"Ignoring malformed sync account entry: {entry!r}")
            continue
        contexts.append(CallerContext(tenant_id=tenant_id, user_id=user_id))
    return contexts


async def periodic_sync(engine: CalendarSyncEngine, contexts: List[CallerContext], interval_minutes: int = 60):
    """Run periodic synchronization for every configured account"""
    logger.info(f"Starting periodic sync with {interval_minutes} minute interval")
    while True:
        try:
            # Wait for the specified interval
            await asyncio.sleep(interval_minutes * 60)

            for context in contexts:
                try:
                    summary = await engine.sync_events(context)
                    logger.info(
                        f"Periodic sync for {context.tenant_id}/{context.user_id}: "
                        f"{len(summary.created)} created, {len(summary.updated)} updated"
                    )
                except CalendarSyncError as e:
                    logger.error(f"Periodic sync failed for {context.tenant_id}/{context.user_id}: {e}")
        except asyncio.CancelledError:
            logger.info("Periodic sync task cancelled, exiting cleanly")
            break


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage = SyncStorageManager()
    await storage.initialize()
    logger.info("Sync storage initialized")

    calendar_service = MicrosoftCalendarService()
    graph_auth = MicrosoftGraphAuth(storage)
    engine = CalendarSyncEngine(
        calendar_service=calendar_service,
        storage=storage,
        token_provider=graph_auth,
        activity_logger=ActivityLogger(storage),
    )

    app.state.storage = storage
    app.state.graph_auth = graph_auth
    app.state.sync_engine = engine

    sync_task = None
    contexts = parse_sync_accounts(settings.SYNC_ACCOUNTS)
    if contexts:
        sync_task = asyncio.create_task(periodic_sync(engine, contexts, settings.SYNC_INTERVAL_MINUTES))
        logger.info(f"Periodic sync scheduled every {settings.SYNC_INTERVAL_MINUTES} minutes for {len(contexts)} accounts")

    try:
        yield
    finally:
        if sync_task:
            sync_task.cancel()
            try:
                await sync_task
            except asyncio.CancelledError:
                pass
        await calendar_service.close()
        await storage.close()
        logger.info("Sync storage closed")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Enrollment Calendar Sync",
        description="Keeps enrollment CRM meetings in sync with Outlook calendars",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Exception handler for synchronization errors
    @app.exception_handler(CalendarSyncError)
    async def calendar_sync_exception_handler(request: Request, exc: CalendarSyncError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.API_PREFIX)

    # Route for health check
    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    return app


app = create_app()

# Direct execution for development
if __name__ == "__main__":
    uvicorn.run("enrollment_calendar.main:app", host="0.0.0.0", port=8008, reload=settings.DEBUG)
