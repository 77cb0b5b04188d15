from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from .api.http import router as http_router
from .common.errors import ApiError
from .common.logger import get_logger, setup_logging
from .common.trace import new_trace_id
from .core.config import ConfigManager
from .core.runtime import ServiceRuntime, build_runtime
from .models import ErrorEnvelope

logger = get_logger(__name__)


def create_app(runtime: Optional[ServiceRuntime] = None) -> FastAPI:
    """Query API + both consumers in one process.

    Serve with: uvicorn --factory docflow.app:create_app
    """
    app = FastAPI(title="Docflow Consumers (v0)")

    # CORS (dev-friendly; tighten in prod)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if runtime is None:
        cm = ConfigManager()
        cfg = cm.load()
        setup_logging(cfg.logging.level, cfg.logging.format)
        runtime = build_runtime(cfg, config_manager=cm)
    else:
        setup_logging(runtime.config.logging.level, runtime.config.logging.format)

    # Dependency injection via app.state
    app.state.config = runtime.config
    app.state.runtime = runtime

    @app.on_event("startup")
    async def _startup() -> None:
        await runtime.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await runtime.stop()
        runtime.close()

    @app.exception_handler(ApiError)
    async def api_error_handler(_, exc: ApiError):
        trace_id = new_trace_id()
        logger.info("api_error", code=exc.code, http_status=exc.http_status, trace_id=trace_id)
        body = ErrorEnvelope(code=exc.code, message=exc.message, trace_id=trace_id, data=exc.data or {})
        return JSONResponse(status_code=exc.http_status, content=body.model_dump())

    app.include_router(http_router, prefix="/v1")
    return app
