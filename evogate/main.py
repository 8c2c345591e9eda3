import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from evogate.config import get_settings
from evogate.database import get_db, init_db
from evogate.errors import SessionStoreUnavailableError
from evogate.gateway import build_gateway
from evogate.logging_config import get_logger, setup_logging
from evogate.routers import chatbot, events, helpdesk, instances, websocket
from evogate.services.health_service import check_session_invariants, get_system_health

settings = get_settings()
setup_logging(settings.log_level, settings.log_format)

app = FastAPI(
    title="Evogate",
    description="WhatsApp event gateway: sink fan-out and chatbot session routing",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(events.router)
app.include_router(instances.router)
app.include_router(chatbot.router)
app.include_router(helpdesk.router)
app.include_router(websocket.router)

sweep_logger = get_logger("sweep_worker")
_sweep_worker_task: asyncio.Task | None = None


def _is_sweep_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.sweep_worker_enabled


async def _sweep_worker_loop() -> None:
    interval_seconds = max(settings.session_sweep_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            results = await app.state.gateway.sweep()
            if any(results.values()):
                sweep_logger.info("Sweep worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except (SessionStoreUnavailableError, SQLAlchemyError) as exc:
            sweep_logger.error("Sweep worker lost the session store", extra={"context": {"error": str(exc)}})
            await app.state.gateway.alerts.alert_critical("Session store unavailable", {"error": str(exc)})
        except Exception as exc:
            sweep_logger.error("Sweep worker loop failed", extra={"context": {"error": str(exc)}})
            await app.state.gateway.alerts.alert_error("Sweep worker failed", {"error": str(exc)})


@app.on_event("startup")
async def start_gateway() -> None:
    global _sweep_worker_task
    init_db()
    if not hasattr(app.state, "gateway"):
        app.state.gateway = build_gateway(settings)
    if not _is_sweep_worker_enabled():
        return
    if _sweep_worker_task is None or _sweep_worker_task.done():
        _sweep_worker_task = asyncio.create_task(_sweep_worker_loop())
        sweep_logger.info("Sweep worker started")


@app.on_event("shutdown")
async def stop_gateway() -> None:
    global _sweep_worker_task
    if _sweep_worker_task is not None:
        _sweep_worker_task.cancel()
        try:
            await _sweep_worker_task
        except asyncio.CancelledError:
            pass
        _sweep_worker_task = None
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None:
        await gateway.aclose()
        del app.state.gateway


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/details")
def health_details(db: Session = Depends(get_db)):
    health = get_system_health(db)
    if health.get("store") == "ok":
        health["invariants"] = check_session_invariants(db, heal=False)
    return health
