"""
AI Image Creator - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    credits,
    payment,
    tasks,
    admin,
    templates,
    history,
)
from services.sweeper import run_stuck_task_sweep
from services.task_notifier import task_notifier

logger = logging.getLogger(__name__)


async def _periodic_stuck_task_sweep() -> None:
    interval_minutes = max(int(settings.STUCK_TASK_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_stuck_task_sweep()
            if result.get("found") or result.get("refunded"):
                print(
                    f"🧹 Stuck-task sweep: found={result.get('found', 0)} "
                    f"failed={result.get('failed', 0)} refunded={result.get('refunded', 0)}"
                )
        except Exception as exc:
            print(f"⚠️ Stuck-task sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting AI Image Creator API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    await task_notifier.start_bridge()
    sweep_task = None
    if int(settings.STUCK_TASK_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_stuck_task_sweep())
        print(
            "📅 Stuck-task sweep loop enabled "
            f"(every {int(settings.STUCK_TASK_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    await task_notifier.stop_bridge()
    print("👋 Shutting down API...")


app = FastAPI(
    title="AI Image Creator API",
    description="Credits, payments and image generation tasks for the AI image creator",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_body(message, detail=None) -> dict:
    body = {"success": False, "error": message, "detail": detail if detail is not None else message}
    if isinstance(detail, dict):
        body.update(detail)
        body["error"] = detail.get("message", message)
    return body


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(message, exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=_error_body("Invalid request", jsonable_errors(exc)),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("Internal server error"))


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(credits.router, prefix="/api/credits", tags=["Credits"])
app.include_router(payment.router, prefix="/api/payment", tags=["Payment"])
app.include_router(tasks.router, prefix="/api", tags=["Tasks"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])
app.include_router(templates.router, prefix="/api/templates", tags=["Templates"])
app.include_router(history.router, prefix="/api/history", tags=["History"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "AI Image Creator API",
        "version": "0.1.0",
        "status": "running"
    }
