from __future__ import annotations

from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from warden.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    OTPResendRequest,
    OTPResendResponse,
    OTPVerifyRequest,
    PasswordForgotRequest,
    PasswordResetConfirm,
    PermissionCheckResponse,
    PermissionCreateRequest,
    PermissionResponse,
    RegisterRequest,
    RegisterResponse,
    RoleCreateRequest,
    RoleResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
    UserResponse,
)
from warden.logging import get_logger
from warden.service.auth import AuthContext, VerificationRequired
from warden.service.errors import RateLimitedError
from warden.service.runtime import check_rate_limit, get_runtime
from warden.storage.models import Permission, Role, Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_LIMIT_WINDOW_SECONDS = 60


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key``; raises 429 when the bucket is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, RATE_LIMIT_WINDOW_SECONDS, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", bucket=key.split(":", 1)[0])
        raise RateLimitedError("rate limit exceeded", detail={"retry_after": reset_seconds})
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        phone=user.phone,
        first_name=user.first_name,
        last_name=user.last_name,
        is_email_verified=user.is_email_verified,
        is_phone_verified=user.is_phone_verified,
        is_active=user.is_active,
        tenant_id=user.tenant_id,
        platform=user.platform,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


def _role_to_response(role: Role) -> RoleResponse:
    return RoleResponse(id=role.id, name=role.name, description=role.description)


def _permission_to_response(perm: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=perm.id,
        name=perm.name,
        resource=perm.resource,
        action=perm.action,
        description=perm.description,
    )


def _session_to_response(session: Session, current_id: Optional[str]) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        platform=session.platform,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_active_at=session.last_active_at,
        device_id=session.device_id,
        ip_addr=session.ip_addr,
        user_agent=session.user_agent,
        current=session.id == current_id,
    )


async def get_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, session_id)
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired credentials", status_code=401)
    return ctx


def require_permission(resource: str, action: str) -> Callable:
    """Dependency factory: authenticate, then demand ``action`` on ``resource``."""

    async def _dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        runtime = get_runtime()
        await runtime.auth.require_permission(principal, resource, action)
        return principal

    return _dependency


# -- authentication -----------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    x_platform: Optional[str] = Header(None, alias="X-Platform"),
):
    """Create an account and send verification codes to each supplied contact.

    Raises:
        400: On missing contact details or an existing username, email or phone
        403: If signup is disabled
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        username=body.username,
        password=body.password,
        email=body.email,
        phone=body.phone,
        first_name=body.first_name,
        last_name=body.last_name,
        platform=body.platform or x_platform,
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user=_user_to_response(result.user), verification=result.verification
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    x_platform: Optional[str] = Header(None, alias="X-Platform"),
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
):
    """Check credentials and issue tokens for the caller's platform.

    An account with no verified contact gets a fresh verification code and a
    ``needs_verification`` response instead of tokens.

    Raises:
        400: If the platform is not supported
        401: If credentials are invalid
        429: If rate limit exceeded for this identifier
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.identifier.strip().lower()}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    user = runtime.auth.authenticate_credentials(body.identifier, body.password)
    outcome = await runtime.auth.login(
        user,
        body.platform or x_platform,
        device_id=body.device_id,
        ip_addr=_client_ip(request),
        user_agent=user_agent,
    )
    if isinstance(outcome, VerificationRequired):
        data = LoginResponse(
            needs_verification=True,
            user_id=outcome.user_id,
            verification_channel=outcome.channel,
            verification_sent=outcome.verification_sent,
        )
    else:
        data = LoginResponse(
            access_token=outcome.access_token,
            refresh_token=outcome.refresh_token,
            token_type=outcome.token_type,
            expires_in=outcome.expires_in,
            session_id=outcome.session_id,
            platform=outcome.platform,
            user=_user_to_response(outcome.user),
        )
    return Envelope(status="ok", data=data)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: TokenRefreshRequest,
    x_platform: Optional[str] = Header(None, alias="X-Platform"),
):
    runtime = get_runtime()
    result = await runtime.auth.refresh_token(body.refresh_token, body.platform or x_platform)
    return Envelope(
        status="ok",
        data=TokenRefreshResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            rotated=result.rotated,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    """End the caller's session and revoke the supplied refresh token.

    Always answers 200; ``data.success`` is false when a teardown step failed.
    """
    runtime = get_runtime()
    body = body or LogoutRequest()
    success = await runtime.auth.logout(
        principal.user_id,
        session_id=body.session_id or principal.session_id,
        refresh_token=body.refresh_token,
        platform=principal.platform,
        access_jti=principal.jti,
        access_expires_at=principal.expires_at,
    )
    return Envelope(status="ok", data={"success": success})


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp(body: OTPVerifyRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp_verify:{body.user_id}",
        runtime.settings.otp_rate_limit_per_minute * 2,
        response=response,
    )
    verified = await runtime.auth.verify_otp(body.user_id, body.code, body.purpose)
    return Envelope(status="ok", data={"verified": verified})


@router.post("/auth/otp/resend", response_model=Envelope, tags=["auth"])
async def resend_otp(body: OTPResendRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp_resend:{body.user_id}",
        runtime.settings.otp_rate_limit_per_minute,
        response=response,
    )
    issue = await runtime.auth.resend_otp(body.user_id, body.purpose, body.channel)
    return Envelope(
        status="ok",
        data=OTPResendResponse(
            channel=issue.channel, delivered=issue.delivered, expires_at=issue.expires_at
        ),
    )


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.identifier.strip().lower()}",
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    started = await runtime.auth.initiate_password_reset(
        body.identifier, body.preferred_method
    )
    return Envelope(
        status="ok", data={"user_id": started.user_id, "method": started.method}
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, response: Response):
    """Set a new password with a password-reset code.

    Every refresh token and session of the account is revoked, so all devices
    have to log in again.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset_confirm:{body.user_id}",
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    await runtime.auth.reset_password(body.user_id, body.code, body.new_password)
    return Envelope(status="ok", data={"success": True})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.sessions.list_active(principal.user_id)
    return Envelope(
        status="ok",
        data=[_session_to_response(s, principal.session_id) for s in sessions],
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("unauthorized", "invalid or expired credentials", status_code=401)
    permissions = runtime.permissions.get_user_permissions(user.id)
    return Envelope(
        status="ok",
        data=MeResponse(
            user=_user_to_response(user),
            roles=runtime.roles.role_names(user.id),
            permissions=sorted({p.name for p in permissions}),
            session_id=principal.session_id,
        ),
    )


# -- RBAC ---------------------------------------------------------------------


@router.get("/permissions/check", response_model=Envelope, tags=["rbac"])
async def check_permission(
    resource: str = Query(..., min_length=1, max_length=64),
    action: str = Query(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    allowed = await runtime.auth.has_permission(principal.user_id, resource, action)
    return Envelope(
        status="ok",
        data=PermissionCheckResponse(resource=resource, action=action, allowed=allowed),
    )


@router.get("/permissions", response_model=Envelope, tags=["rbac"])
async def list_permissions(
    principal: AuthContext = Depends(require_permission("permissions", "list")),
):
    runtime = get_runtime()
    perms: List[Permission] = runtime.permissions.list_permissions()
    return Envelope(status="ok", data=[_permission_to_response(p) for p in perms])


@router.post("/permissions", response_model=Envelope, status_code=201, tags=["rbac"])
async def create_permission(
    body: PermissionCreateRequest,
    principal: AuthContext = Depends(require_permission("permissions", "create")),
):
    runtime = get_runtime()
    perm = runtime.permissions.create_permission(
        body.name, body.resource, body.action, body.description
    )
    return Envelope(status="ok", data=_permission_to_response(perm))


@router.get("/roles", response_model=Envelope, tags=["rbac"])
async def list_roles(
    principal: AuthContext = Depends(require_permission("roles", "list")),
):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=[_role_to_response(r) for r in runtime.roles.list_roles()]
    )


@router.post("/roles", response_model=Envelope, status_code=201, tags=["rbac"])
async def create_role(
    body: RoleCreateRequest,
    principal: AuthContext = Depends(require_permission("roles", "create")),
):
    runtime = get_runtime()
    role = runtime.roles.create_role(body.name, body.description)
    return Envelope(status="ok", data=_role_to_response(role))


@router.put("/roles/{role_id}/permissions/{permission_id}", response_model=Envelope, tags=["rbac"])
async def assign_role_permission(
    role_id: str,
    permission_id: str,
    principal: AuthContext = Depends(require_permission("roles", "update")),
):
    runtime = get_runtime()
    added = await runtime.permissions.assign_permission_to_role(role_id, permission_id)
    return Envelope(status="ok", data={"assigned": added})


@router.delete(
    "/roles/{role_id}/permissions/{permission_id}", response_model=Envelope, tags=["rbac"]
)
async def remove_role_permission(
    role_id: str,
    permission_id: str,
    principal: AuthContext = Depends(require_permission("roles", "update")),
):
    runtime = get_runtime()
    removed = await runtime.permissions.remove_permission_from_role(role_id, permission_id)
    return Envelope(status="ok", data={"removed": removed})


@router.put("/users/{user_id}/roles/{role_id}", response_model=Envelope, tags=["rbac"])
async def assign_user_role(
    user_id: str,
    role_id: str,
    principal: AuthContext = Depends(require_permission("users", "update")),
):
    runtime = get_runtime()
    added = await runtime.roles.assign_role_to_user(user_id, role_id)
    return Envelope(status="ok", data={"assigned": added})


@router.delete("/users/{user_id}/roles/{role_id}", response_model=Envelope, tags=["rbac"])
async def remove_user_role(
    user_id: str,
    role_id: str,
    principal: AuthContext = Depends(require_permission("users", "update")),
):
    runtime = get_runtime()
    removed = await runtime.roles.remove_role_from_user(user_id, role_id)
    return Envelope(status="ok", data={"removed": removed})
