"""Auth API: email codes, Sign in with Apple, sessions, account.

Learn: Routes for the whole sign-in lifecycle:
- POST /auth/email/send-code → mail a one-time code (429 + Retry-After if too soon)
- POST /auth/email/resend-code → same, for the client's "resend" button
- POST /auth/email/verify → code → access + refresh tokens
- POST /auth/apple → Apple identity token → access + refresh tokens
- POST /auth/refresh → refresh token → rotated pair
- POST /auth/logout → revoke one refresh token
- GET /auth/me → current user profile
- DELETE /auth/account → revoke all sessions, soft-delete the user

Routes only translate: domain exceptions in, HTTP status codes out.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from livlog_auth.auth.apple import FederatedTokenError
from livlog_auth.auth.dependencies import CurrentUser, get_current_user
from livlog_auth.db.engine import get_db
from livlog_auth.db.models import User
from livlog_auth.schemas.auth import (
    AppleAuthRequest,
    AuthResponse,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    SendCodeRequest,
    SendCodeResponse,
    UserRead,
    VerifyCodeRequest,
)
from livlog_auth.services.auth_service import AuthResult, AuthService
from livlog_auth.services.session_store import SessionError
from livlog_auth.services.users import UserNotFoundError
from livlog_auth.services.verification import (
    InvalidEmailError,
    ResendThrottledError,
    VerificationError,
)

router = APIRouter(prefix="/auth")


def _svc(request: Request, db: AsyncSession = Depends(get_db)) -> AuthService:
    state = request.app.state
    return AuthService.from_settings(
        db,
        state.settings,
        issuer=state.issuer,
        sender=state.code_sender,
        apple=state.apple_verifier,
    )


def _user_read(user: User, providers: list[str]) -> UserRead:
    return UserRead(
        id=user.id,
        email=user.email,
        email_verified=user.email_verified,
        display_name=user.display_name,
        ai_usage_policy=user.ai_usage_policy,
        auth_providers=providers,
        created_at=user.created_at,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
        user=_user_read(result.user, result.providers),
    )


def _throttled(e: ResendThrottledError) -> HTTPException:
    return HTTPException(
        status_code=429,
        detail={"message": str(e), "retry_after": e.retry_after},
        headers={"Retry-After": str(e.retry_after)},
    )


def _verification_failed(e: VerificationError) -> HTTPException:
    if isinstance(e, InvalidEmailError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ResendThrottledError):
        return _throttled(e)
    return HTTPException(status_code=401, detail=str(e))


# ─── Email codes ─────────────────────────────────────────


@router.post("/email/send-code", response_model=SendCodeResponse)
async def send_code(
    body: SendCodeRequest,
    request: Request,
    svc: AuthService = Depends(_svc),
):
    """Issue a verification code for an email address."""
    try:
        await svc.send_code(body.email)
    except VerificationError as e:
        raise _verification_failed(e)
    return SendCodeResponse(
        message="Verification code sent",
        expires_in=request.app.state.settings.verification_code_ttl_seconds,
    )


@router.post("/email/resend-code", response_model=SendCodeResponse)
async def resend_code(
    body: SendCodeRequest,
    request: Request,
    svc: AuthService = Depends(_svc),
):
    """Issue a new code unless the last one is too recent."""
    try:
        await svc.resend_code(body.email)
    except VerificationError as e:
        raise _verification_failed(e)
    return SendCodeResponse(
        message="Verification code sent",
        expires_in=request.app.state.settings.verification_code_ttl_seconds,
    )


@router.post("/email/verify", response_model=AuthResponse)
async def verify_code(body: VerifyCodeRequest, svc: AuthService = Depends(_svc)):
    """Redeem a code: signs the user in, creating the account if needed."""
    try:
        result = await svc.login_with_email(body.email, body.code, body.device_info)
    except VerificationError as e:
        raise _verification_failed(e)
    return _auth_response(result)


# ─── Apple ───────────────────────────────────────────────


@router.post("/apple", response_model=AuthResponse)
async def apple_sign_in(body: AppleAuthRequest, svc: AuthService = Depends(_svc)):
    """Sign in with an Apple identity token."""
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    if body.full_name:
        given_name = body.full_name.given_name
        family_name = body.full_name.family_name

    try:
        result = await svc.login_with_apple(
            body.identity_token,
            given_name=given_name,
            family_name=family_name,
            email=body.email,
            device_info=body.device_info,
        )
    except FederatedTokenError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return _auth_response(result)


# ─── Sessions ────────────────────────────────────────────


@router.post("/refresh", response_model=AuthResponse)
async def refresh(body: RefreshRequest, svc: AuthService = Depends(_svc)):
    """Exchange a refresh token for a new access + refresh pair."""
    try:
        result = await svc.refresh(body.refresh_token)
    except SessionError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return _auth_response(result)


@router.post("/logout", response_model=MessageResponse)
async def logout(body: LogoutRequest, svc: AuthService = Depends(_svc)):
    """Revoke a refresh token. Unknown or already revoked tokens are fine."""
    await svc.logout(body.refresh_token)
    return MessageResponse(message="Logged out")


# ─── Account ─────────────────────────────────────────────


@router.get("/me", response_model=UserRead)
async def get_me(
    current: CurrentUser = Depends(get_current_user),
    svc: AuthService = Depends(_svc),
):
    """Get the current user's profile."""
    try:
        user, providers = await svc.get_profile(current.user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    return _user_read(user, providers)


@router.delete("/account", response_model=MessageResponse)
async def delete_account(
    current: CurrentUser = Depends(get_current_user),
    svc: AuthService = Depends(_svc),
):
    """Delete the current user's account and sign out everywhere."""
    try:
        await svc.delete_account(current.user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    return MessageResponse(message="Account deleted")
