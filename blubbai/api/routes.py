from __future__ import annotations

import asyncio
import base64
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse

from blubbai.api.filters import bearer_token, get_principal, get_runtime
from blubbai.api.schemas import (
    AccountIn,
    AccountResponse,
    LoginRequest,
    TokenBody,
    TokenPairResponse,
)
from blubbai.service.auth import Principal
from blubbai.service.errors import (
    AuthenticationError,
    ErrorCode,
    NotFoundError,
    ValidationError,
)
from blubbai.service.runtime import Runtime
from blubbai.storage.models import Account, SecretMethod

auth_router = APIRouter(prefix="/api/v1/auth", tags=["auth"])
user_router = APIRouter(prefix="/api/v1/user", tags=["user"])
tools_router = APIRouter(prefix="/tools", tags=["tools"])


def _token_pair(runtime: Runtime, account: Account, two_factor_completed: bool) -> TokenPairResponse:
    access = runtime.tokens.make_access(account, two_factor_completed)
    refresh = runtime.tokens.make_refresh(account)
    return TokenPairResponse(
        access_token=access,
        refresh_token=refresh.token,
        refresh_expires_at=refresh.expires_at,
    )


def _account_response(runtime: Runtime, account: Account) -> AccountResponse:
    return AccountResponse.from_model(
        account,
        phone=runtime.auth.phone_of(account),
        role=runtime.auth.role_of(account),
    )


def _parse_method(raw: Optional[str]) -> Optional[SecretMethod]:
    if raw is None or not raw.strip():
        return None
    try:
        method = SecretMethod(raw.strip().upper())
    except ValueError:
        raise ValidationError.of(ErrorCode.METHOD_NOT_SET) from None
    if method is SecretMethod.NONE:
        raise ValidationError.of(ErrorCode.METHOD_NOT_SET)
    return method


def _require_dev_mode(runtime: Runtime) -> None:
    if not runtime.settings.dev_mode:
        raise NotFoundError("not found")


# -- auth ---------------------------------------------------------------------


@auth_router.post("/noa/register", status_code=status.HTTP_201_CREATED)
async def register(body: AccountIn, runtime: Runtime = Depends(get_runtime)):
    """Create an account and return an access token without 2FA.

    Raises:
        409: If the username is taken
        400: If the username, email or phone is invalid
    """
    account = await runtime.auth.register(body.to_draft())
    return TokenBody(token=runtime.tokens.make_access(account, False))


@auth_router.post("/noa/login", response_model=TokenPairResponse)
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Check the password and return a token pair that still needs 2FA."""
    account = await asyncio.to_thread(runtime.auth.login, body.username, body.password)
    return _token_pair(runtime, account, False)


@auth_router.post("/noa/validateToken")
async def validate_token(body: TokenBody, runtime: Runtime = Depends(get_runtime)) -> bool:
    return runtime.codec.is_valid(body.token)


@auth_router.post("/noa/renewToken", response_model=TokenBody)
async def renew_token(
    request: Request,
    body: TokenBody,
    runtime: Runtime = Depends(get_runtime),
):
    """Trade a refresh token plus the (possibly expired) access token for a new access token."""
    access = bearer_token(request)
    if access is None:
        raise AuthenticationError.of(ErrorCode.TOKEN_EXPIRED)
    renewed = runtime.tokens.renew(body.token, access)
    if renewed is None:
        raise AuthenticationError.of(ErrorCode.TOKEN_EXPIRED)
    return TokenBody(token=renewed)


@auth_router.get("/no2fa/2fa")
async def start_two_factor(
    method: Optional[str] = Query(None),
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Enroll or trigger a second factor.

    The first AUTHENTICATOR enrollment answers with the otpauth URI; email
    and SMS answer with an empty body once the code is sent.
    """
    requested = _parse_method(method)
    account = runtime.auth.account_for(principal)
    uri = await runtime.auth.begin_two_factor(account, requested)
    if uri is not None:
        return JSONResponse(content=uri)
    return Response(status_code=status.HTTP_200_OK)


@auth_router.post("/no2fa/2fa", response_model=TokenPairResponse)
async def complete_two_factor(
    code: Optional[str] = Query(None),
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    account = runtime.auth.account_for(principal)
    account = runtime.auth.complete_two_factor(account, code)
    return _token_pair(runtime, account, True)


@auth_router.api_route("/noa/2fa/verifyMail", methods=["PATCH", "GET"])
async def verify_mail(
    uuid: Optional[str] = Query(None),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.auth.verify_mail(uuid)
    return Response(status_code=status.HTTP_200_OK)


# -- user ---------------------------------------------------------------------


@user_router.get("", response_model=AccountResponse)
async def get_account(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    return _account_response(runtime, runtime.auth.account_for(principal))


@user_router.put("/update", response_model=AccountResponse)
async def update_account(
    body: AccountIn,
    old_password: Optional[str] = Query(None, alias="oldPassword"),
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Change email, phone, password or secret method after re-checking the old password."""
    account = runtime.auth.account_for(principal)
    updated = await runtime.auth.update_account(account, body.to_draft(), old_password)
    return _account_response(runtime, updated)


@user_router.delete("/delete", status_code=status.HTTP_204_NO_CONTENT)
async def delete_account(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.auth.delete_account(principal)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# -- tools --------------------------------------------------------------------


@tools_router.get("/health", response_class=PlainTextResponse)
async def health() -> str:
    return "OK"


@tools_router.get("/key", response_class=PlainTextResponse)
async def generate_key(runtime: Runtime = Depends(get_runtime)) -> str:
    """Fresh random 512-bit signing key, base64 encoded."""
    _require_dev_mode(runtime)
    return base64.b64encode(secrets.token_bytes(64)).decode("ascii")


@tools_router.get("/token", response_model=TokenBody)
async def test_token(runtime: Runtime = Depends(get_runtime)):
    _require_dev_mode(runtime)
    return TokenBody(token=runtime.codec.make_test_token())


@tools_router.get("/bearer", response_class=PlainTextResponse)
async def echo_bearer(request: Request, runtime: Runtime = Depends(get_runtime)) -> str:
    _require_dev_mode(runtime)
    token = bearer_token(request)
    if token is None:
        raise ValidationError("missing bearer token")
    return token
