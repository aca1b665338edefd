from __future__ import annotations

import re
import time
from typing import Optional

import structlog
from fastapi import FastAPI, Request

from blubbai.api.error_handling import error_response
from blubbai.logging import get_logger, redact_headers, set_correlation_id
from blubbai.service.auth import Principal
from blubbai.service.errors import AuthenticationError, ErrorCode
from blubbai.service.runtime import Runtime
from blubbai.service.token_codec import TokenType

logger = get_logger(__name__)

_PUBLIC_API_PATH = re.compile(r"^/api/v1/[^/]+/noa(?:/.*)?$")
_TWO_FACTOR_BYPASS = ("/no2fa", "/noa")


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def is_public_path(method: str, path: str) -> bool:
    if method.upper() == "OPTIONS":
        return True
    if path == "/tools" or path.startswith("/tools/"):
        return True
    return bool(_PUBLIC_API_PATH.match(path))


def bypasses_two_factor(path: str) -> bool:
    return any(marker in path for marker in _TWO_FACTOR_BYPASS)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise AuthenticationError("authentication required")
    return principal


def install_filters(app: FastAPI, runtime: Runtime) -> None:
    """Register the request pipeline.

    Starlette runs the most recently added middleware first, so the stages
    are added innermost first: authorization gate, 2FA, authentication,
    logging, correlation id.
    """
    codec = runtime.codec

    @app.middleware("http")
    async def authorization_gate(request: Request, call_next):
        if is_public_path(request.method, request.url.path):
            return await call_next(request)
        if getattr(request.state, "principal", None) is None:
            logger.info("request_unauthenticated", path=request.url.path)
            return error_response(401, 401, "authentication required")
        return await call_next(request)

    @app.middleware("http")
    async def two_factor_filter(request: Request, call_next):
        path = request.url.path
        if request.method == "OPTIONS" or bypasses_two_factor(path):
            return await call_next(request)
        token = bearer_token(request)
        if token is None:
            return await call_next(request)

        claims = codec.claims(token)
        if claims is None or claims.get("tokenType") != TokenType.ACCESS.value:
            return error_response(
                401, ErrorCode.TOKEN_EXPIRED, ErrorCode.TOKEN_EXPIRED.message
            )
        if claims.get("secretMethod") is None:
            if not claims.get("2fa_completed"):
                logger.info("two_factor_required", path=path, sub=claims.get("sub"))
                return error_response(
                    403,
                    ErrorCode.TWO_FACTOR_REQUIRED,
                    ErrorCode.TWO_FACTOR_REQUIRED.message,
                )
            return error_response(
                400, ErrorCode.METHOD_NOT_SET, ErrorCode.METHOD_NOT_SET.message
            )
        return await call_next(request)

    @app.middleware("http")
    async def authentication_filter(request: Request, call_next):
        request.state.principal = None
        token = bearer_token(request)
        if token is not None:
            claims = codec.claims(token)
            if claims is not None and claims.get("tokenType") == TokenType.ACCESS.value:
                request.state.principal = Principal(username=claims["sub"])
                structlog.contextvars.bind_contextvars(principal=claims["sub"])
        try:
            return await call_next(request)
        finally:
            request.state.principal = None
            structlog.contextvars.unbind_contextvars("principal")

    @app.middleware("http")
    async def logging_filter(request: Request, call_next):
        started = time.perf_counter()
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            headers=redact_headers(request.headers.items()),
        )
        response = await call_next(request)
        logger.info(
            "http_response",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response
