import os
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel
from starlette.responses import JSONResponse

from meeting_api.api import auth, health, meetings
from meeting_api.api.deps import get_hub, get_provider_chain, get_queue
from meeting_api.api.ws import ws_router
from meeting_api.config import settings
from meeting_api.core.boot import BootResult, get_boot_cache, run_boot_checks
from meeting_api.db import init_db
from meeting_api.errors import register_error_handlers
from meeting_api.jobs.worker import AudioWorker
from meeting_api.services.audio_processor import AudioProcessor

os.makedirs(settings.log_dir, exist_ok=True)
logger.add(os.path.join(settings.log_dir, "app.log"), rotation="10 MB", retention=5, level=settings.log_level)

app = FastAPI(title=settings.project_name, version="0.1.0")
register_error_handlers(app)

app.include_router(auth.router, prefix="/api/auth")
app.include_router(meetings.router, prefix="/api/meetings")
app.include_router(health.router, prefix="/api")
app.include_router(ws_router)

origins = {
    settings.frontend_origin.rstrip("/"),
    "http://localhost:5173",
    "http://127.0.0.1:5173",
}
logger.bind(tag="startup.cors").info(f"CORS allow_origins={sorted(origins)}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Health(BaseModel):
    status: str
    timestamp: str


def build_worker() -> AudioWorker:
    processor = AudioProcessor(get_provider_chain(), timeout=settings.http_timeout_sec)
    return AudioWorker(
        get_queue(),
        processor,
        get_hub(),
        concurrency=settings.worker_concurrency,
        poll_interval=settings.queue_poll_interval,
    )


def _log_runtime_config() -> None:
    cfg = {
        "env": settings.env,
        "bucket": settings.storage_bucket,
        "queue_attempts": settings.queue_attempts,
        "queue_backoff_ms": settings.queue_backoff_ms,
        "worker_concurrency": settings.worker_concurrency,
        "worker_enabled": settings.worker_enabled,
        "openai": bool(settings.openai_api_key),
        "gemini": bool(settings.google_ai_api_key),
    }
    conf_line = " ".join(f"{k}={cfg[k]}" for k in sorted(cfg))
    logger.bind(tag="startup.config").info(f"CONF {conf_line}")


@app.on_event("startup")
def on_startup() -> None:
    logger.bind(tag="startup.init").info("initializing database and boot checks")
    init_db()
    run_boot_checks(force=True)
    _log_runtime_config()
    app.state.worker = None
    if settings.worker_enabled:
        worker = build_worker()
        worker.start()
        app.state.worker = worker


@app.on_event("shutdown")
def on_shutdown() -> None:
    worker = getattr(app.state, "worker", None)
    if worker is not None:
        worker.stop()


@app.get("/health", response_model=Health)
def health_check():
    return Health(status="ok", timestamp=datetime.now(timezone.utc).isoformat())


@app.get("/healthz/ready")
def healthz_ready():
    br: BootResult = get_boot_cache()
    return JSONResponse(content={"ok": br.ok, "checks": br.checks}, status_code=200 if br.ok else 503)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3001")))
