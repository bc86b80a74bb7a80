from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path

from llmhub.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SendMailRequest,
    TokenPairResponse,
    UpdateUserRequest,
    UserResponse,
)
from llmhub.logging import get_correlation_id, get_logger
from llmhub.service.auth import AuthContext
from llmhub.service.runtime import get_runtime
from llmhub.storage.models import TokenPurpose, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data: Any = None) -> Envelope:
    cid = get_correlation_id()
    if cid:
        return Envelope(status="ok", data=data, request_id=cid)
    return Envelope(status="ok", data=data)


def _user_response(user: User) -> UserResponse:
    return UserResponse(**user.to_public())


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or missing access token", status_code=401)
    return ctx


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an unverified account and mail its verification link.

    Raises:
        409: If the email is already registered
        400: If password and confirm password differ
        502: If the verification mail could not be sent (account is kept)
    """
    runtime = get_runtime()
    user = await runtime.auth.register(
        name=body.name,
        email=body.email,
        password=body.password,
        confirm_password=body.confirm_password,
    )
    return _ok(_user_response(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        404: Unknown email
        403: Email not verified yet
        401: Wrong password
    """
    runtime = get_runtime()
    user, pair = await runtime.auth.login(body.email, body.password)
    return _ok(LoginResponse(user_id=user.id, **pair.as_dict()))


@router.post("/auth/resend-verification-email", response_model=Envelope, tags=["auth"])
async def resend_verification_email(body: SendMailRequest):
    runtime = get_runtime()
    await runtime.tokens.issue(body.email, TokenPurpose.EMAIL_VERIFY)
    return _ok(MessageResponse(message="Verification mail sent"))


@router.get("/auth/email-verify/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Path(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    await runtime.tokens.verify_email(token)
    return _ok(MessageResponse(message="Email verified"))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: SendMailRequest):
    runtime = get_runtime()
    await runtime.tokens.issue(body.email, TokenPurpose.FORGOT_PASSWORD)
    return _ok(MessageResponse(message="Forgot password mail sent"))


@router.post("/auth/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest, token: str = Path(..., min_length=1, max_length=256)
):
    runtime = get_runtime()
    await runtime.tokens.reset_password(token, body.password, body.confirm_password)
    return _ok(MessageResponse(message="Password reset"))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: RefreshTokenRequest):
    runtime = get_runtime()
    _, pair = await runtime.auth.refresh_tokens(body.refresh_token)
    return _ok(TokenPairResponse(**pair.as_dict()))


@router.put("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        body.confirm_password,
    )
    return _ok(MessageResponse(message="Password changed"))


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return _ok(_user_response(runtime.users.get(principal.user_id)))


@router.put("/users/me", response_model=Envelope, tags=["users"])
async def update_current_user(
    body: UpdateUserRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = runtime.users.update(principal.user_id, name=body.name)
    return _ok(_user_response(user))


@router.delete("/users/me", response_model=Envelope, tags=["users"])
async def delete_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.users.delete(principal.user_id)
    return _ok(_user_response(user))
