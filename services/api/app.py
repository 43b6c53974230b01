# services/api/app.py
from __future__ import annotations

from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from services.api.config import Settings
from services.api.health_checks import comprehensive_health_check, readiness_check, utc_now_iso
from services.api.logging_config import get_logger, setup_logging
from services.api.routes_actions import (
    RpcFactory,
    action_headers,
    get_rpc_factory,
    get_settings,
    router as actions_router,
)
from services.api.schemas_api import HealthRes, LivenessRes, ReadinessRes
from services.errors import StealthLinkError

logger = get_logger("app")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API. Passing ``settings`` pins them for every request, otherwise
    they are read from the environment on first use.
    """
    setup_logging()
    app = FastAPI(title="Stealth Link API", version="0.1.0")

    if settings is not None:
        app.dependency_overrides[get_settings] = lambda: settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Action-Version", "X-Blockchain-Ids"],
    )

    def _settings_for(request: Request) -> Settings:
        override = request.app.dependency_overrides.get(get_settings)
        return override() if override else get_settings()

    @app.exception_handler(StealthLinkError)
    async def _stealth_error(request: Request, exc: StealthLinkError):
        logger.error(f"{request.method} {request.url.path}: {exc.kind}: {exc.message}")
        return JSONResponse(
            {"error": exc.message, **exc.to_payload()},
            status_code=exc.http_status,
            headers=action_headers(_settings_for(request)),
        )

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.error(f"{request.method} {request.url.path}: unexpected error: {exc}", exc_info=exc)
        return JSONResponse(
            {"error": "An unknown error occurred"},
            status_code=500,
            headers=action_headers(_settings_for(request)),
        )

    app.include_router(actions_router)

    # =========================
    # Health
    # =========================

    @app.get("/health", response_model=HealthRes)
    async def health(settings: Settings = Depends(get_settings), rpc_factory: RpcFactory = Depends(get_rpc_factory)):
        if not settings.rpc_url:
            return await comprehensive_health_check(None)
        async with rpc_factory(settings.rpc_url) as rpc:
            return await comprehensive_health_check(rpc)

    @app.get("/health/live", response_model=LivenessRes)
    async def health_live():
        return LivenessRes(timestamp=utc_now_iso())

    @app.get("/health/ready", response_model=ReadinessRes)
    async def health_ready(settings: Settings = Depends(get_settings),
                           rpc_factory: RpcFactory = Depends(get_rpc_factory)):
        if not settings.rpc_url:
            reason = await readiness_check(None)
        else:
            async with rpc_factory(settings.rpc_url) as rpc:
                reason = await readiness_check(rpc)
        if reason:
            body = ReadinessRes(status="not_ready", timestamp=utc_now_iso(), reason=reason)
            return JSONResponse(body.model_dump(), status_code=503)
        return ReadinessRes(status="ready", timestamp=utc_now_iso())

    return app


app = create_app()
