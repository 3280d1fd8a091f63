# Application entrypoint: configures middleware, startup/shutdown routines, and API routers.
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import threading
import time

from .db import Base, engine
from .routes.bookings import router as bookings_router
from .routes.cron import router as cron_router
from .routes.messages import router as messages_router
from .sweepers import sweep_scheduled_messages
from .triggers import wait_for_pending

logger = logging.getLogger("stayflow.main")

# Seconds between in-process scheduled-message sweeps; 0 leaves scheduling to the cron endpoint
MESSAGE_SWEEP_INTERVAL_SECONDS = int(os.getenv("MESSAGE_SWEEP_INTERVAL_SECONDS", "0"))


def _start_message_sweeper(interval_seconds: int) -> None:
    """
    Launch a daemon thread that runs the scheduled-message sweep every `interval_seconds`.

    Errors are logged and the loop carries on at the next interval.
    """
    def _loop() -> None:
        while True:
            try:
                sweep_scheduled_messages()
            except Exception:
                logger.exception("sweeper.thread_error")
            time.sleep(interval_seconds)

    t = threading.Thread(target=_loop, name="scheduled-message-sweeper", daemon=True)
    t.start()


# '*' cannot be combined with credentialed requests; fall back to explicit localhost origins
def _parse_cors_origins(env_value: str | None) -> list[str]:
    default_dev_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    if not env_value:
        return default_dev_origins
    origins = [o.strip() for o in env_value.split(",") if o.strip()]
    if "*" in origins:
        return default_dev_origins
    return origins


app = FastAPI(title="StayFlow Messaging API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(os.getenv("CORS_ORIGINS")),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    # Local SQLite gets its tables created here; server databases are migrated with alembic
    if os.getenv("DATABASE_URL", "sqlite:///./data.db").startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    if MESSAGE_SWEEP_INTERVAL_SECONDS > 0:
        _start_message_sweeper(MESSAGE_SWEEP_INTERVAL_SECONDS)


@app.on_event("shutdown")
def on_shutdown() -> None:
    # Let queued status-change evaluations finish before the process exits
    if not wait_for_pending(timeout=30):
        logger.warning("shutdown.pending_hooks_abandoned")


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(cron_router, prefix="/api", tags=["cron"])
app.include_router(bookings_router, prefix="/api/v1", tags=["bookings"])
app.include_router(messages_router, prefix="/api/v1", tags=["messages"])
