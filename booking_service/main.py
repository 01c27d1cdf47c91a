import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shared.redis import get_redis

from .config import SERVICE_NAME, settings
from .core import BookingCore
from .db import SessionLocal, engine
from .errors import BookingError
from .logging_setup import configure_logging
from .middleware import RequestLoggingMiddleware
from .routes import router

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Booking Service")
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)

_stop_event = asyncio.Event()
_tasks: list[asyncio.Task] = []


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
async def health(request: Request):
    core = getattr(request.app.state, "core", None)
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "events_enabled": bool(core and core.publisher.enabled),
    }


@app.on_event("startup")
async def startup():
    if getattr(app.state, "core", None) is None:
        app.state.core = BookingCore.from_settings(settings, SessionLocal, get_redis(settings.redis_url))
    core = app.state.core

    # never crash the service if RabbitMQ is temporarily unavailable
    try:
        await core.publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing without events: %s", e)

    _stop_event.clear()
    _tasks.append(asyncio.create_task(core.sweeper.run(_stop_event, settings.sweep_interval_seconds)))
    _tasks.append(asyncio.create_task(core.payments.run(_stop_event, settings.reconcile_interval_seconds)))


@app.on_event("shutdown")
async def shutdown():
    _stop_event.set()
    core = getattr(app.state, "core", None)
    for task in _tasks:
        try:
            await task
        except Exception:
            logger.exception("background task ended with an error")
    _tasks.clear()
    if core is not None:
        await core.notifier.drain()
        try:
            await core.publisher.close()
        except Exception:
            logger.warning("RabbitMQ close failed", exc_info=True)
    await engine.dispose()
