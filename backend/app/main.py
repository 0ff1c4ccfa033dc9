import logging
import os
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings

# ─── Logging setup (file + console) ───
_LOG_DIR = Path(settings.log_dir) if settings.log_dir else Path(__file__).resolve().parent.parent / "logs"
_LOG_DIR.mkdir(parents=True, exist_ok=True)

_log_level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)

logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        RotatingFileHandler(
            _LOG_DIR / "package-hub.log",
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding="utf-8",
        ),
    ],
)

# Quiet noisy libraries
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

from app.routers import cron, notifications, packages, requote

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.create_tables_on_startup:
        try:
            from app.database import init_db
            await init_db()
        except Exception as e:
            logger.error(f"Table creation failed: {e}")

    # Startup: launch background scheduler
    scheduler = None
    if settings.scheduler_enabled:
        try:
            from apscheduler.schedulers.asyncio import AsyncIOScheduler
            from apscheduler.triggers.cron import CronTrigger

            scheduler = AsyncIOScheduler(timezone="UTC")

            async def _run_package_refresh():
                from app.database import async_session_factory
                from app.services.package_store import PackageStore
                from app.services.price_refresh_service import price_refresh_service
                async with async_session_factory() as db:
                    result = await price_refresh_service.run(PackageStore(db))
                    if result.skipped:
                        logger.info("Scheduled package refresh skipped, a batch is already running")
                    elif result.processed:
                        logger.info(
                            f"Scheduled package refresh: {result.success_count}/{result.processed} ok, "
                            f"{result.price_changes} price changes"
                        )

            scheduler.add_job(
                _run_package_refresh,
                CronTrigger(hour=settings.refresh_cron_hour, minute=0),
                id="package_refresh",
                max_instances=1,
                coalesce=True,
            )

            scheduler.start()
            logger.info("Background scheduler started")
        except Exception as e:
            logger.error(f"Scheduler failed to start: {e}")

    yield

    # Shutdown
    await requote.cancel_active_runs()
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")

    from app.services.run_lock import run_lock_service
    from app.services.slack_client import slack_client
    from app.services.travelcompositor_client import tc_client
    await tc_client.close()
    await slack_client.close()
    await run_lock_service.close()


app = FastAPI(
    title="Package Hub",
    description="Package price sync and requote orchestration",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(requote.router, prefix="/api/requote", tags=["requote"])
app.include_router(cron.router, prefix="/api/cron", tags=["cron"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])
app.include_router(packages.router, prefix="/api/packages", tags=["packages"])


@app.get("/api/health")
async def health_check():
    return {"status": "ok", "service": "package-hub"}
