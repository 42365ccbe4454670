import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from .database import async_session_maker, init_db
from .deps import Services, build_services, limiter
from .errors import CreatorError, ErrorCode
from .routers import admin, billing, images, outline, tasks
from .settings.config import settings

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the app. Tests pass their own ``services``; otherwise startup builds them."""
    app = FastAPI(title="Pagesmith")
    app.state.services = services
    app.state.limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ----------------------
    # Route Includes
    # ----------------------
    app.include_router(outline.router)
    app.include_router(images.router)
    app.include_router(tasks.router)
    app.include_router(billing.router)
    app.include_router(admin.router)

    # ----------------------
    # Error bodies
    # ----------------------
    @app.exception_handler(CreatorError)
    async def _creator_error_handler(request: Request, exc: CreatorError):
        if exc.status_code >= 500:
            logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code.value, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(request: Request, exc: RequestValidationError):
        err = CreatorError("Invalid request", ErrorCode.INVALID_REQUEST, {"errors": exc.errors()})
        return JSONResponse(status_code=422, content=jsonable_encoder(err.to_dict()))

    @app.exception_handler(RateLimitExceeded)
    async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
        err = CreatorError(f"Rate limit exceeded: {exc.detail}", ErrorCode.RATE_LIMITED)
        return JSONResponse(status_code=429, content=err.to_dict())

    @app.get("/health")
    async def health():
        return {"ok": True}

    # ----------------------
    # Lifecycle
    # ----------------------
    @app.on_event("startup")
    async def on_startup():
        await init_db()
        if app.state.services is None:
            app.state.services = build_services(async_session_maker)
        svc: Services = app.state.services
        await svc.timeouts.recover_interrupted_tasks()
        if settings.RUN_SCHEDULER:
            svc.timeouts.start_scheduler()

    @app.on_event("shutdown")
    async def on_shutdown():
        svc: Optional[Services] = app.state.services
        if svc is None:
            return
        svc.timeouts.stop()
        await svc.supervisor.shutdown()

    return app


app = create_app()
