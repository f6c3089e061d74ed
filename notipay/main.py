import asyncio
import logging
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from notipay.core.config import settings
from notipay.core.errors import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    PersistenceError,
    UpstreamError,
)
from notipay.core.log_config import configure_logging

# ------------------------------------------------------------
# 1. CONFIG & LOGGING
# ------------------------------------------------------------
configure_logging()
logger = logging.getLogger("notipay")

ERROR_STATUS = (
    (InvalidRequestError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (UpstreamError, 502),
    (PersistenceError, 500),
)


def _error_handler(status_code: int):
    async def handler(request: Request, exc):
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"success": False, "error": exc.message})
    return handler


def _log_task_result(task: asyncio.Task):
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)


def create_app(orchestrator=None) -> FastAPI:
    # ------------------------------------------------------------
    # 2. FASTAPI APP
    # ------------------------------------------------------------
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Peer-to-peer wallet transfers: collect from the payer, pay out to the payee.",
        version="1.0.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )
    app.state.orchestrator = orchestrator
    app.state.reconcile_task = None

    # ------------------------------------------------------------
    # 3. ROUTERS (API ROUTES)
    # ------------------------------------------------------------
    from notipay.routers import payment_router, webhooks

    app.include_router(payment_router.router, prefix="/api", tags=["Payments"])
    app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "environment": settings.ENVIRONMENT}

    # ------------------------------------------------------------
    # 4. EXCEPTION HANDLERS
    # ------------------------------------------------------------
    for exc_class, status_code in ERROR_STATUS:
        app.add_exception_handler(exc_class, _error_handler(status_code))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Something went wrong. We're on it.",
                "request_id": request.headers.get("X-Request-ID"),
            },
        )

    # ------------------------------------------------------------
    # 5. STARTUP EVENTS
    # ------------------------------------------------------------
    @app.on_event("startup")
    async def startup_event():
        logger.info(f"NotiPay API started | Env: {settings.ENVIRONMENT} | Debug: {settings.DEBUG}")
        if app.state.orchestrator is None:
            from notipay.services.orchestrator import build_orchestrator
            app.state.orchestrator = build_orchestrator(settings)

        if settings.RECONCILE_ON_STARTUP:
            from notipay.tasks.reconcile import reconcile_pending_intents
            # the event loop only keeps a weak reference to tasks
            task = asyncio.create_task(
                reconcile_pending_intents(
                    app.state.orchestrator, timedelta(seconds=settings.RECONCILE_AFTER_SECONDS)
                ),
                name="startup-reconcile",
            )
            task.add_done_callback(_log_task_result)
            app.state.reconcile_task = task
            logger.info("Startup reconciliation scheduled")

    # ------------------------------------------------------------
    # 6. REQUEST LOGGING MIDDLEWARE
    # ------------------------------------------------------------
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(f"{request.method} {request.url.path}")
        response = await call_next(request)
        logger.info(f"{request.method} {request.url.path} -> {response.status_code}")
        return response

    return app


app = create_app()
