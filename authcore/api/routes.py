from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, status

from authcore.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    IdentityResponse,
    ProfileUpdateRequest,
    ProfileUpdateResponse,
    ResetPasswordRequest,
    SessionListResponse,
    SessionResponse,
    SignInRequest,
    SignInResponse,
    SignUpRequest,
    UserResponse,
)
from authcore.logging import bind_identity
from authcore.service.guard import AuthContext, require_role
from authcore.service.runtime import get_runtime
from authcore.storage.models import ProfileUpdate

router = APIRouter(prefix="/api/v1")


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    ctx = await get_runtime().guard.authenticate(authorization)
    bind_identity(ctx.user_id, ctx.session_id)
    return ctx


async def get_optional_auth_context(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    return await get_runtime().guard.authenticate_optional(authorization)


async def get_admin_context(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    return require_role(ctx, get_runtime().settings.admin_role)


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def sign_in(body: SignInRequest):
    """Exchange email and password for a bearer token bound to a new session.

    Raises:
        404: No verified account owns the email
        401: Password does not match
    """
    result = await get_runtime().auth.sign_in(body.email, body.password)
    return Envelope(
        message="Sign in successful",
        data=SignInResponse(
            token=result.token,
            session_id=result.session_id,
            expires_at=result.expires_at,
            user=UserResponse.from_user(result.user),
        ),
    )


@router.post(
    "/auth/signup",
    response_model=Envelope,
    status_code=status.HTTP_201_CREATED,
    tags=["auth"],
)
async def sign_up(body: SignUpRequest):
    user = await get_runtime().auth.sign_up(
        body.email, body.password, body.confirm_password, name=body.name
    )
    return Envelope(
        message="Account created. Please check your email to verify your account.",
        data=UserResponse.from_user(user),
    )


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_account(token: str = Query(default="", max_length=256)):
    user = await get_runtime().auth.verify_account(token)
    return Envelope(message="Account verified successfully", data=UserResponse.from_user(user))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Always answers the same way so the response does not reveal whether the account exists."""
    await get_runtime().auth.forgot_password(body.email)
    return Envelope(
        message="If an account with that email exists, a password reset link has been sent."
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    await get_runtime().auth.reset_password(body.token, body.password, body.confirm_password)
    return Envelope(message="Password has been reset successfully")


@router.get("/auth/verify-email-change", response_model=Envelope, tags=["auth"])
async def verify_email_change(token: str = Query(default="", max_length=256)):
    user = await get_runtime().auth.verify_email_change(token)
    return Envelope(message="Email updated successfully", data=UserResponse.from_user(user))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(ctx: AuthContext = Depends(get_auth_context)):
    await get_runtime().auth.logout(ctx.user_id, ctx.session_id, ctx.token, ctx.expires_at)
    return Envelope(message="Logged out successfully")


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(ctx: AuthContext = Depends(get_auth_context)):
    removed = await get_runtime().auth.logout_all(ctx.user_id, ctx.token, ctx.expires_at)
    return Envelope(message="Logged out from all sessions", data={"sessions_removed": removed})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(ctx: AuthContext = Depends(get_auth_context)):
    sessions = await get_runtime().auth.list_sessions(ctx.user_id)
    return Envelope(
        message="Sessions retrieved",
        data=SessionListResponse(
            sessions=[SessionResponse.from_info(info, ctx.session_id) for info in sessions]
        ),
    )


@router.get("/auth/profile", response_model=Envelope, tags=["profile"])
async def get_profile(ctx: AuthContext = Depends(get_auth_context)):
    user = await get_runtime().auth.get_profile(ctx.user_id)
    return Envelope(message="Profile retrieved", data=UserResponse.from_user(user))


@router.put("/auth/profile", response_model=Envelope, tags=["profile"])
async def update_profile(body: ProfileUpdateRequest, ctx: AuthContext = Depends(get_auth_context)):
    result = await get_runtime().auth.update_profile(
        ctx.user_id, ProfileUpdate(**body.model_dump())
    )
    message = "Profile updated successfully"
    if result.pending_email:
        message = "Profile updated. Please verify your new email address."
    return Envelope(
        message=message,
        data=ProfileUpdateResponse(
            user=UserResponse.from_user(result.user), pending_email=result.pending_email
        ),
    )


@router.get("/auth/whoami", response_model=Envelope, tags=["auth"])
async def whoami(ctx: Optional[AuthContext] = Depends(get_optional_auth_context)):
    if ctx is None:
        return Envelope(message="Anonymous", data=IdentityResponse(authenticated=False))
    return Envelope(
        message="Authenticated",
        data=IdentityResponse(
            authenticated=True, user_id=ctx.user_id, email=ctx.email, role=ctx.role
        ),
    )


@router.get("/admin/check", response_model=Envelope, tags=["admin"])
async def admin_check(ctx: AuthContext = Depends(get_admin_context)):
    return Envelope(message="Access granted", data={"user_id": ctx.user_id, "role": ctx.role})
