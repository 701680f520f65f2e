from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Protocol, Union

from warden.config import Platform, Settings
from warden.logging import get_logger, sanitize_error_message
from warden.service.credentials import CredentialValidator
from warden.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    ServiceError,
)
from warden.service.notifications import Channel
from warden.service.otp import OTPIssue, OTPManager
from warden.service.permissions import PermissionResolver
from warden.service.policy import PlatformPolicyResolver
from warden.service.refresh_tokens import RefreshTokenManager
from warden.service.roles import RoleService
from warden.service.sessions import SessionManager
from warden.service.tokens import AccessTokenCodec
from warden.storage.errors import ConstraintViolation, StoreUnavailable
from warden.storage.models import OTPPurpose, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def create_user(self, username: str, **kwargs: Any) -> User: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def delete_user(self, user_id: str) -> bool: ...

    def record_login(self, user_id: str, platform: str, when: datetime) -> None: ...

    def record_audit_event(
        self,
        user_id: Optional[str],
        action: str,
        *,
        resource: str = "auth",
        platform: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Any: ...


@dataclass
class AuthContext:
    user_id: str
    username: str
    tenant_id: str
    platform: str
    roles: List[str] = field(default_factory=list)
    session_id: Optional[str] = None
    jti: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    expires_in: int
    user: User
    platform: str
    session_id: Optional[str] = None
    token_type: str = "bearer"


@dataclass
class VerificationRequired:
    """Returned by login when no contact channel is verified yet."""

    user_id: str
    channel: Channel
    verification_sent: bool


@dataclass
class RegistrationResult:
    user: User
    # channel -> whether the verification code was delivered
    verification: Dict[str, bool] = field(default_factory=dict)


@dataclass
class TokenRefreshResult:
    access_token: str
    expires_in: int
    refresh_token: str
    rotated: bool


@dataclass
class PasswordResetStarted:
    user_id: str
    method: Channel


class AuthService:
    """Login, registration, refresh, logout and password-reset flows.

    Each flow is a short sequence over the credential, OTP, session, refresh
    token and permission components; this class owns the ordering and the
    audit trail, the components own their state.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        credentials: CredentialValidator,
        otp: OTPManager,
        sessions: SessionManager,
        refresh_tokens: RefreshTokenManager,
        permissions: PermissionResolver,
        roles: RoleService,
        policies: PlatformPolicyResolver,
        tokens: AccessTokenCodec,
        settings: Settings,
        cache=None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.otp = otp
        self.sessions = sessions
        self.refresh_tokens = refresh_tokens
        self.permissions = permissions
        self.roles = roles
        self.policies = policies
        self.tokens = tokens
        self.settings = settings
        self.cache = cache

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @contextlib.contextmanager
    def _guard(self, flow: str, error: ServiceError) -> Iterator[None]:
        """Replace unexpected failures in ``flow`` with ``error``.

        Service errors and datastore outages keep their own mapping.
        """
        try:
            yield
        except (ServiceError, StoreUnavailable):
            raise
        except Exception as exc:
            logger.error(
                "auth_flow_failed",
                flow=flow,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise error from exc

    def _audit(
        self,
        user_id: Optional[str],
        action: str,
        platform: Optional[str] = None,
        **meta: Any,
    ) -> None:
        try:
            self.store.record_audit_event(
                user_id, action, resource="auth", platform=platform, meta=meta
            )
        except Exception as exc:
            logger.warning(
                "audit_write_failed", user_id=user_id, action=action, error=str(exc)
            )

    # -- credentials and login ---------------------------------------------

    def authenticate_credentials(self, identifier: str, password: str) -> User:
        return self.credentials.validate(identifier, password)

    async def _request_verification(self, user: User) -> VerificationRequired:
        if user.email:
            channel: Channel = "email"
            purpose = OTPPurpose.EMAIL_VERIFICATION
        elif user.phone:
            channel = "sms"
            purpose = OTPPurpose.PHONE_VERIFICATION
        else:
            raise BadRequestError("no contact channel available")
        issue = await self.otp.generate(user.id, purpose, channel=channel)
        logger.info(
            "login_verification_required",
            user_id=user.id,
            channel=channel,
            delivered=issue.delivered,
        )
        return VerificationRequired(
            user_id=user.id, channel=channel, verification_sent=issue.delivered
        )

    async def login(
        self,
        user: User,
        platform: Union[str, Platform, None],
        *,
        device_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Union[LoginResult, VerificationRequired]:
        platform = self.policies.parse_platform(platform)
        if not user.is_active:
            raise AuthenticationError("invalid credentials")
        if not user.has_verified_contact:
            return await self._request_verification(user)

        with self._guard("login", AuthenticationError("login failed")):
            policy = self.policies.resolve(platform)
            session_id = None
            if policy.uses_session:
                session = await self.sessions.create(
                    user.id,
                    platform,
                    device_id=device_id,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    tenant_id=user.tenant_id,
                )
                session_id = session.id
            access = self.tokens.issue(
                user,
                platform,
                policy,
                roles=self.roles.role_names(user.id),
                session_id=session_id,
            )
            refresh = self.refresh_tokens.create(
                user.id, platform, device_id=device_id, session_id=session_id
            )
            self.store.record_login(user.id, platform.value, self._now())

        self._audit(user.id, "login", platform.value, session_id=session_id, device_id=device_id)
        logger.info(
            "login_succeeded", user_id=user.id, platform=platform.value, session_id=session_id
        )
        return LoginResult(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=access.expires_in,
            user=user,
            platform=platform.value,
            session_id=session_id,
        )

    # -- registration --------------------------------------------------------

    def _check_available(
        self, username: str, email: Optional[str], phone: Optional[str]
    ) -> None:
        taken = None
        if self.store.get_user_by_username(username):
            taken = "username"
        elif email and self.store.get_user_by_email(email):
            taken = "email"
        elif phone and self.store.get_user_by_phone(phone):
            taken = "phone"
        if taken:
            raise BadRequestError(
                "user with this email, phone or username already exists",
                detail={"field": taken},
            )

    def _discard_user(self, user_id: str) -> None:
        """Remove a half-registered account so the same contact can retry."""
        try:
            self.store.delete_user(user_id)
        except Exception as exc:
            logger.error("register_rollback_failed", user_id=user_id, error=str(exc))
        else:
            logger.info("register_rolled_back", user_id=user_id)

    async def register(
        self,
        *,
        username: str,
        password: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        platform: Union[str, Platform, None] = None,
    ) -> RegistrationResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup disabled")
        username = (username or "").strip()
        if not username or not password:
            raise BadRequestError("username and password are required")
        if not email and not phone:
            raise BadRequestError("email or phone is required")
        platform = self.policies.parse_platform(platform)
        self._check_available(username, email, phone)

        password_hash, algo = self.credentials.hash_password(password)
        try:
            user = self.store.create_user(
                username,
                email=email,
                phone=phone,
                first_name=first_name,
                last_name=last_name,
                tenant_id=self.settings.default_tenant_id,
                platform=platform.value,
            )
        except ConstraintViolation as exc:
            # Lost a race against a concurrent registration
            raise BadRequestError(
                "user with this email, phone or username already exists",
                detail=exc.detail,
            ) from exc
        try:
            with self._guard("register", BadRequestError("registration failed")):
                self.store.save_password(user.id, password_hash, algo)
                await self.roles.assign_default_role(user.id, self.settings.default_role_name)
        except Exception:
            self._discard_user(user.id)
            raise

        verification: Dict[str, bool] = {}
        for channel, purpose, present in (
            ("email", OTPPurpose.EMAIL_VERIFICATION, user.email),
            ("sms", OTPPurpose.PHONE_VERIFICATION, user.phone),
        ):
            if not present:
                continue
            try:
                issue = await self.otp.generate(user.id, purpose, channel=channel)
                verification[channel] = issue.delivered
            except ServiceError as exc:
                logger.warning(
                    "register_verification_failed",
                    user_id=user.id,
                    channel=channel,
                    error=exc.message,
                )
                verification[channel] = False

        self._audit(user.id, "register", platform.value)
        logger.info("user_registered", user_id=user.id, platform=platform.value)
        return RegistrationResult(user=user, verification=verification)

    # -- refresh -------------------------------------------------------------

    async def refresh_token(
        self, token: str, platform: Union[str, Platform, None] = None
    ) -> TokenRefreshResult:
        record = self.refresh_tokens.validate(token)
        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            raise AuthenticationError("user not found or inactive")
        if platform is None:
            platform = self.policies.parse_platform(record.platform)
        else:
            platform = self.policies.parse_platform(platform)
        if record.session_id and not self.sessions.validate(record.session_id):
            logger.info("refresh_rejected", record_id=record.id, reason="session_ended")
            raise AuthenticationError("invalid refresh token")

        with self._guard("refresh", AuthenticationError("invalid refresh token")):
            policy = self.policies.resolve(platform)
            access = self.tokens.issue(
                user,
                platform,
                policy,
                roles=self.roles.role_names(user.id),
                session_id=record.session_id,
            )
            rotated = self.refresh_tokens.needs_rotation(record)
            refresh_value = record.token
            if rotated:
                refresh_value = self.refresh_tokens.rotate(record).token
            if record.session_id:
                await self.sessions.touch(record.session_id)

        self._audit(user.id, "token_refresh", platform.value, rotated=rotated)
        return TokenRefreshResult(
            access_token=access.token,
            expires_in=access.expires_in,
            refresh_token=refresh_value,
            rotated=rotated,
        )

    # -- logout --------------------------------------------------------------

    async def logout(
        self,
        user_id: str,
        *,
        session_id: Optional[str] = None,
        refresh_token: Optional[str] = None,
        platform: Union[str, Platform, None] = None,
        access_jti: Optional[str] = None,
        access_expires_at: Optional[datetime] = None,
    ) -> bool:
        """Best-effort teardown of the caller's session and tokens.

        Returns False when any step failed; never raises.
        """
        ok = True
        if session_id:
            try:
                session = self.sessions.get(session_id)
                if session and session.user_id == user_id:
                    await self.sessions.invalidate(session_id)
            except Exception as exc:
                ok = False
                logger.warning(
                    "logout_session_failed", user_id=user_id, session_id=session_id, error=str(exc)
                )
        if refresh_token:
            try:
                record = self.refresh_tokens.get(refresh_token)
                if record and record.user_id == user_id:
                    self.refresh_tokens.revoke(refresh_token)
            except Exception as exc:
                ok = False
                logger.warning("logout_refresh_failed", user_id=user_id, error=str(exc))
        if access_jti and access_expires_at and self.cache and access_expires_at > self._now():
            try:
                await self.cache.denylist_access_token(access_jti, access_expires_at)
            except Exception as exc:
                ok = False
                logger.warning("access_token_denylist_failed", user_id=user_id, error=str(exc))

        platform_name = None
        if platform is not None:
            platform_name = platform.value if isinstance(platform, Platform) else str(platform)
        self._audit(user_id, "logout", platform_name, session_id=session_id)
        logger.info("logout", user_id=user_id, session_id=session_id, clean=ok)
        return ok

    # -- OTP -----------------------------------------------------------------

    @staticmethod
    def parse_purpose(value: Union[str, OTPPurpose]) -> OTPPurpose:
        if isinstance(value, OTPPurpose):
            return value
        try:
            return OTPPurpose(str(value).strip().upper())
        except ValueError as exc:
            raise BadRequestError("unsupported code purpose", detail={"purpose": value}) from exc

    async def verify_otp(
        self, user_id: str, code: str, purpose: Union[str, OTPPurpose]
    ) -> bool:
        return await self.otp.verify(user_id, code, self.parse_purpose(purpose))

    async def resend_otp(
        self,
        user_id: str,
        purpose: Union[str, OTPPurpose],
        channel: Optional[Channel] = None,
    ) -> OTPIssue:
        return await self.otp.generate(user_id, self.parse_purpose(purpose), channel=channel)

    # -- password reset ------------------------------------------------------

    async def initiate_password_reset(
        self, identifier: str, preferred_method: Optional[str] = None
    ) -> PasswordResetStarted:
        identifier = (identifier or "").strip()
        if "@" in identifier:
            user = self.store.get_user_by_email(identifier)
        else:
            user = self.store.get_user_by_phone(identifier) if identifier else None
        if not user or not user.is_active:
            raise BadRequestError("user not found")

        preferred = (preferred_method or "").lower()
        method: Optional[Channel]
        if preferred == "email" and user.email:
            method = "email"
        elif preferred in ("sms", "phone") and user.phone:
            method = "sms"
        elif user.email:
            method = "email"
        elif user.phone:
            method = "sms"
        else:
            raise BadRequestError("no contact method available for this user")

        await self.otp.generate(user.id, OTPPurpose.PASSWORD_RESET, channel=method)
        self._audit(user.id, "password_reset_request", user.platform, method=method)
        return PasswordResetStarted(user_id=user.id, method=method)

    async def reset_password(self, user_id: str, code: str, new_password: str) -> bool:
        if not new_password:
            raise BadRequestError("new password is required")
        await self.otp.verify(user_id, code, OTPPurpose.PASSWORD_RESET)
        user = self.store.get_user(user_id)
        if not user:
            raise BadRequestError("user not found")

        password_hash, algo = self.credentials.hash_password(new_password)
        self.store.save_password(user.id, password_hash, algo)
        revoked = self.refresh_tokens.revoke_all(user.id)
        ended = await self.sessions.invalidate_all(user.id)
        self._audit(user.id, "password_reset_success", user.platform)
        logger.info(
            "password_reset_completed",
            user_id=user.id,
            refresh_revoked=revoked,
            sessions_ended=ended,
        )
        return True

    # -- request authentication ---------------------------------------------

    async def _is_denylisted(self, jti: Optional[str]) -> bool:
        if not jti or not self.cache:
            return False
        try:
            return await self.cache.is_access_token_denylisted(jti)
        except Exception as exc:
            logger.warning("denylist_check_failed", error=str(exc))
            return False

    async def authenticate(
        self, authorization: Optional[str], session_id: Optional[str] = None
    ) -> Optional[AuthContext]:
        """Resolve a bearer header to an :class:`AuthContext`, or ``None``."""
        token = self.tokens.extract_bearer(authorization)
        if not token:
            return None
        payload = self.tokens.decode(token)
        if not payload or payload.get("token_type") != "access":
            return None
        if await self._is_denylisted(payload.get("jti")):
            logger.info("access_token_denylisted", user_id=payload.get("sub"))
            return None

        user = self.store.get_user(str(payload.get("sub") or ""))
        if not user or not user.is_active:
            return None
        if payload.get("tenant_id") != user.tenant_id:
            return None

        token_sid = payload.get("sid")
        if token_sid and session_id and session_id != token_sid:
            return None
        sid = token_sid or session_id
        if sid:
            session = self.sessions.get(sid)
            if not session or session.user_id != user.id:
                return None
            if not session.is_active_at(self._now()):
                return None
            await self.sessions.touch(sid)

        roles = payload.get("roles")
        return AuthContext(
            user_id=user.id,
            username=user.username,
            tenant_id=user.tenant_id,
            platform=str(payload.get("platform") or Platform.WEB.value),
            roles=list(roles) if isinstance(roles, list) else [],
            session_id=sid,
            jti=payload.get("jti"),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    async def has_permission(self, user_id: str, resource: str, action: str) -> bool:
        return await self.permissions.user_has_permission(user_id, resource, action)

    async def require_permission(self, ctx: AuthContext, resource: str, action: str) -> None:
        if not await self.permissions.user_has_permission(ctx.user_id, resource, action):
            logger.info(
                "permission_denied", user_id=ctx.user_id, resource=resource, action=action
            )
            raise ForbiddenError(
                "insufficient permissions",
                detail={"resource": resource, "action": action},
            )
