import logging

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from .api import api_threads, api_ws
from .core.config import settings
from .core.errors import MessagingError
from .core.observability import setup_logging, setup_tracer
from .database import Base, engine, get_db
from . import models  # noqa: F401  (register tables on Base.metadata)
from .realtime import bus
from .realtime.envelope import Envelope
from .realtime.gateway import RealtimeGateway
from .realtime.presence import PresenceRegistry
from .utils.errors import http_error_from

setup_logging()
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Property Messaging API", default_response_class=ORJSONResponse)
setup_tracer(app)

# One registry per process; the gateway is the only writer
registry = PresenceRegistry(publisher=bus.publish_user_event if bus.bus_enabled() else None)
gateway = RealtimeGateway(registry)
app.state.registry = registry
app.state.gateway = gateway

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials="*" not in settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["ETag"],
)
logger.info("CORS origins set to: %s", settings.CORS_ORIGINS)


@app.exception_handler(MessagingError)
async def messaging_exception_handler(request: Request, exc: MessagingError):
    http_exc = http_error_from(exc)
    return ORJSONResponse(
        status_code=http_exc.status_code,
        content={"detail": http_exc.detail},
        headers=http_exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return validation errors with details and log them for debugging."""
    errors = exc.errors()
    logger.warning("Validation error at %s: %s", request.url.path, errors)
    field_errors = {
        ".".join(str(p) for p in err.get("loc", ()) if p != "body"): err.get("msg", "invalid")
        for err in errors
    }
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": {
                "message": "Invalid request",
                "code": "validation_error",
                "field_errors": field_errors,
            }
        },
    )


@app.get("/healthz", tags=["health"])
def healthz(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except DBAPIError as exc:
        logger.error("health.db_failed", extra={"error": str(exc)})
        return ORJSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unavailable", "db": False},
            headers={"Cache-Control": "no-store"},
        )
    return ORJSONResponse(
        content={"status": "ok", "db": True},
        headers={"Cache-Control": "no-store"},
    )


api_prefix = settings.API_V1_STR  # usually "/api/v1"

app.include_router(api_threads.router, prefix=f"{api_prefix}")
app.include_router(api_ws.router, prefix=f"{api_prefix}", tags=["websocket"])


async def _deliver_remote(user_id: int, data: dict) -> None:
    """Deliver an event published by another instance to local connections."""
    await registry.fan_out([user_id], Envelope.from_raw(data), publish=False)


@app.on_event("startup")
async def start_realtime_bus() -> None:
    task = await bus.start_user_consumer(_deliver_remote)
    app.state.bus_task = task


@app.on_event("shutdown")
async def stop_realtime() -> None:
    app.state.gateway.shutdown()
    task = getattr(app.state, "bus_task", None)
    if task is not None:
        task.cancel()
