import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from zoneinfo import ZoneInfo

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import OperationalError

from services.config import config
from services.errors import ServiceError


class LocalTimeFormatter(logging.Formatter):
    """Log timestamps in the configured display timezone."""

    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, tz=ZoneInfo(config.TIMEZONE))
        if datefmt:
            return dt.strftime(datefmt)
        return dt.strftime("%Y-%m-%d %H:%M:%S %Z")

    def format(self, record):
        result = super().format(record)
        # indent continuation lines of long multi-line messages
        if len(record.message) > 100 and '\n' in record.message:
            lines = record.message.split('\n')
            indent = ' ' * 4
            formatted_msg = '\n'.join([lines[0]] + [indent + line for line in lines[1:]])
            result = result.replace(record.message, formatted_msg)
        return result


def setup_logging():
    """Configure root logging: stdout plus a daily-rotated file kept 30 days."""
    formatter = LocalTimeFormatter(
        fmt='%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S %Z'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(config.LOG_LEVEL.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_dir = Path(config.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    file_handler = TimedRotatingFileHandler(
        filename=log_dir / "app.log",
        when="midnight",
        interval=1,
        backupCount=30,
        encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)


setup_logging()
logger = logging.getLogger(__name__)

from services.auth.replay_guard import ReplayGuard  # noqa: E402
from services.db.connection import session_scope  # noqa: E402
from services.db.init import init_db  # noqa: E402
from services.notification.engine import notification_engine  # noqa: E402
from web.dependencies import limiter  # noqa: E402
from web.routers import admin, auth, events, flashsales, notifications, tickets  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting MobiTickets service...")
    engine = init_db()
    logger.info(f"✓ Database initialized: {engine.url}")

    worker_task = None
    if config.NOTIFY_WORKER_INTERVAL > 0:
        async def _run_send_queue():
            while True:
                try:
                    await notification_engine.process_queue()
                    with session_scope() as db:
                        ReplayGuard(db).purge_expired()
                except Exception as e:
                    logger.error(f"Background worker error: {e}", exc_info=True)
                await asyncio.sleep(config.NOTIFY_WORKER_INTERVAL)

        worker_task = asyncio.create_task(_run_send_queue())
        logger.info(f"Send queue worker started (every {config.NOTIFY_WORKER_INTERVAL}s)")

    logger.info("Service is ready.")
    yield
    logger.info("Shutting down...")
    if worker_task:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass


app = FastAPI(title="MobiTickets", lifespan=lifespan)
app.state.limiter = limiter


async def friendly_rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests, please wait a moment and try again",
            "detail": str(exc),
        },
    )


async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def store_unavailable_handler(request: Request, exc: OperationalError):
    logger.error(f"❌ Store unavailable on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "Service temporarily unavailable, please retry", "code": "SERVICE_UNAVAILABLE"},
    )


app.add_exception_handler(RateLimitExceeded, friendly_rate_limit_handler)
app.add_exception_handler(ServiceError, service_error_handler)
app.add_exception_handler(OperationalError, store_unavailable_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(events.router)
app.include_router(tickets.router)
app.include_router(flashsales.router)
app.include_router(notifications.router)
app.include_router(admin.router)


@app.head("/")
async def head_root():
    """Handle HEAD requests for uptime monitoring."""
    return Response(status_code=200)


@app.get("/health")
async def health_check():
    """Lightweight health check endpoint."""
    return {"status": "ok", "timestamp": time.time()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("web_app:app", host="0.0.0.0", port=8000, reload=True)
