from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from oceanblog.api.auth_gate import (
    authenticate,
    authorize,
    check_ownership,
    optional_auth,
)
from oceanblog.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    ProfileUpdateRequest,
    PublicUserResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserListResponse,
    UserResponse,
    UserStatusRequest,
    VerifyEmailRequest,
)
from oceanblog.logging import get_logger
from oceanblog.service.auth import RESET_REQUESTED_MESSAGE, AuthResult
from oceanblog.service.errors import NotFoundError, RateLimitedError, ValidationError
from oceanblog.service.runtime import check_rate_limit, get_runtime
from oceanblog.service.validation import canonical_email
from oceanblog.storage.models import User

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["users"])


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers to response per IETF draft-polli-ratelimit-headers."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count one request against ``key``'s current window.

    Raises:
        RateLimitedError: once the window is used up; carries the seconds until
            the window resets.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(
            "Too many requests, please try again later",
            retry_after=reset_seconds or window_seconds,
            limit=limit,
        )

    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
    )


# ---------------------------------------------------------------------------
# /api/auth
# ---------------------------------------------------------------------------


@auth_router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and sign it in.

    Raises:
        400: invalid fields or an email that is already registered
        429: too many registrations from this address
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{_client_ip(request)}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.register(
        name=body.name,
        email=body.email,
        password=body.password,
        confirm_password=body.confirm_password,
    )
    return Envelope(
        status="success",
        message="User registered successfully",
        data=_auth_payload(result),
    )


@auth_router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        401: wrong email or password (never says which), or a deactivated account
        423: the account is locked after repeated failures
        429: too many attempts for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{canonical_email(body.email)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(email=body.email, password=body.password)
    return Envelope(status="success", message="Login successful", data=_auth_payload(result))


@auth_router.post("/refresh", response_model=Envelope)
async def refresh_tokens(body: RefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.refresh(body.refresh_token or "")
    return Envelope(
        status="success",
        data={
            "token": result.tokens.access_token,
            "refresh_token": result.tokens.refresh_token,
            "token_type": result.tokens.token_type,
        },
    )


@auth_router.post("/logout", response_model=Envelope)
async def logout(
    body: Optional[LogoutRequest] = None,
    user: User = Depends(authenticate),
):
    """Revoke the given refresh token, or every session when none is sent."""
    runtime = get_runtime()
    await runtime.auth.logout(user, body.refresh_token if body else None)
    return Envelope(status="success", message="Logged out successfully")


@auth_router.get("/me", response_model=Envelope)
async def get_current_user(user: User = Depends(authenticate)):
    return Envelope(status="success", data={"user": UserResponse.from_user(user)})


@auth_router.post("/send-verification", response_model=Envelope)
async def send_verification(response: Response, user: User = Depends(authenticate)):
    runtime = get_runtime()
    # mail is expensive; share the reset budget
    await _enforce_rate_limit(
        runtime,
        f"verify:request:{user.id}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.request_email_verification(user)
    return Envelope(status="success", message="Verification email sent")


@auth_router.post("/verify-email", response_model=Envelope)
async def verify_email(body: VerifyEmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    # Rate limit to prevent token brute-forcing
    await _enforce_rate_limit(
        runtime,
        f"verify:email:{_client_ip(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
        response=response,
    )
    user = await runtime.auth.verify_email(body.token)
    return Envelope(
        status="success",
        message="Email verified successfully",
        data={"user": UserResponse.from_user(user)},
    )


@auth_router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest, response: Response):
    """Start password recovery.

    The answer is identical whether or not the address has an account.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{canonical_email(body.email)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.request_password_reset(body.email)
    return Envelope(status="success", message=RESET_REQUESTED_MESSAGE)


@auth_router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    # Rate limit to prevent token brute-forcing
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.reset_password(body.token, body.password)
    return Envelope(
        status="success",
        message="Password reset successful, please sign in with your new password",
    )


@auth_router.patch("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    user: User = Depends(authenticate),
):
    """Change the current user's password and sign out every session."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{user.id}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.change_password(user, body.current_password, body.new_password)
    return Envelope(status="success", message="Password changed successfully")


# ---------------------------------------------------------------------------
# /api/users
# ---------------------------------------------------------------------------


def _load_user(user_id: str) -> Optional[User]:
    return get_runtime().auth.get_user(user_id)


@users_router.get("/profile", response_model=Envelope)
async def get_profile(user: User = Depends(authenticate)):
    return Envelope(status="success", data=UserResponse.from_user(user))


@users_router.put("/profile", response_model=Envelope)
async def update_profile(body: ProfileUpdateRequest, user: User = Depends(authenticate)):
    runtime = get_runtime()
    updated = await runtime.auth.update_profile(user, **body.model_dump(exclude_unset=True))
    return Envelope(
        status="success",
        message="Profile updated successfully",
        data=UserResponse.from_user(updated),
    )


@users_router.get("", response_model=Envelope)
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(authorize("admin")),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=limit)
    items = [UserResponse.from_user(user) for user in users]
    return Envelope(status="success", data=UserListResponse(items=items, results=len(items)))


@users_router.get("/{user_id}", response_model=Envelope)
async def get_user_by_id(user_id: str, viewer: Optional[User] = Depends(optional_auth)):
    """Public profile for anyone; the full record for the owner and admins."""
    target = _load_user(user_id)
    privileged = viewer is not None and (viewer.id == user_id or viewer.role == "admin")
    if target is None or (not target.is_active and not privileged):
        raise NotFoundError("User not found")
    data = UserResponse.from_user(target) if privileged else PublicUserResponse.from_user(target)
    return Envelope(status="success", data=data)


@users_router.put("/{user_id}", response_model=Envelope)
async def update_user(
    body: ProfileUpdateRequest,
    target: User = Depends(check_ownership(_load_user, owner_field="id", id_param="user_id")),
):
    runtime = get_runtime()
    updated = await runtime.auth.update_profile(target, **body.model_dump(exclude_unset=True))
    return Envelope(
        status="success",
        message="User updated successfully",
        data=UserResponse.from_user(updated),
    )


@users_router.patch("/{user_id}/status", response_model=Envelope)
async def set_user_status(
    user_id: str,
    body: UserStatusRequest,
    admin: User = Depends(authorize("admin")),
):
    if user_id == admin.id and not body.is_active:
        raise ValidationError("You cannot deactivate your own account")
    runtime = get_runtime()
    updated = await runtime.auth.set_active(user_id, body.is_active)
    logger.info("admin_set_user_status", admin_id=admin.id, user_id=user_id, is_active=body.is_active)
    return Envelope(status="success", data=UserResponse.from_user(updated))
