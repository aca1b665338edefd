from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from blubbai.api.error_handling import register_exception_handlers
from blubbai.api.filters import install_filters
from blubbai.api.routes import auth_router, tools_router, user_router
from blubbai.logging import get_logger
from blubbai.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the ASGI application around a runtime.

    ``uvicorn blubbai.app:create_app --factory`` builds the runtime from the
    environment; tests pass one in with their own store and sinks.
    """
    runtime = runtime or Runtime()
    app = FastAPI(title=f"{runtime.settings.platform_name} auth", version=__version__)
    app.state.runtime = runtime

    install_filters(app, runtime)
    # Added after the filters so it wraps them and answers preflights first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime.settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )
    register_exception_handlers(app)

    app.include_router(auth_router)
    app.include_router(user_router)
    app.include_router(tools_router)

    logger.info("app_created", version=__version__, dev_mode=runtime.settings.dev_mode)
    return app
