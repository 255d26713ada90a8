"""Usage monitor application factory."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import load_config
from monitor.core.auth import PUBLIC_PATHS, bearer_token, token_matches
from monitor.core.state import MonitorContext, build_context
from monitor.errors import RefreshRateLimited
from monitor.routers.accounts import router as accounts_router
from monitor.routers.history import router as history_router
from monitor.routers.scheduler import router as scheduler_router
from monitor.routers.settings import router as settings_router
from monitor.routers.ws import router as ws_router

logger = logging.getLogger(__name__)


def create_app(context: MonitorContext = None) -> FastAPI:
    ctx = context or build_context(load_config())

    app = FastAPI(title="Usage Monitor", version="0.1.0")
    app.state.context = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    token = ctx.config.api_token
    if token:
        @app.middleware("http")
        async def require_token(request: Request, call_next):
            if request.url.path in PUBLIC_PATHS:
                return await call_next(request)
            supplied = bearer_token(request.headers.get("authorization"))
            if not token_matches(supplied, token):
                return JSONResponse(status_code=401, content={"error": "unauthorized"})
            return await call_next(request)

    @app.exception_handler(RefreshRateLimited)
    async def rate_limited_handler(request: Request, exc: RefreshRateLimited):
        return JSONResponse(
            status_code=429,
            content={"success": False, "error": str(exc), "retry_after": round(exc.retry_after, 1)},
        )

    app.include_router(scheduler_router)
    app.include_router(accounts_router)
    app.include_router(history_router)
    app.include_router(settings_router)
    app.include_router(ws_router)

    @app.on_event("startup")
    async def startup():
        ctx.init_storage()
        ctx.startup_cleanup()
        if ctx.config.autostart:
            ctx.scheduler.start()

    @app.on_event("shutdown")
    async def shutdown():
        ctx.scheduler.stop()

    return app
