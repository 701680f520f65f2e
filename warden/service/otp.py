from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from warden.logging import get_logger
from warden.service.errors import BadRequestError, NotFoundError
from warden.service.notifications import Channel
from warden.storage.common import generate_uuid
from warden.storage.models import (
    OTPAttempt,
    OTPAttemptStatus,
    OTPCode,
    OTPPurpose,
    User,
)

logger = get_logger(__name__)

OTP_WINDOWS: dict[OTPPurpose, timedelta] = {
    OTPPurpose.EMAIL_VERIFICATION: timedelta(minutes=60),
    OTPPurpose.PHONE_VERIFICATION: timedelta(minutes=15),
    OTPPurpose.PASSWORD_RESET: timedelta(minutes=30),
    OTPPurpose.TWO_FACTOR_AUTH: timedelta(minutes=10),
}

# Codes that have been used or expired this long are purged by cleanup()
OTP_RETENTION = timedelta(days=1)


def max_attempts_for(purpose: OTPPurpose) -> int:
    return 3 if purpose is OTPPurpose.TWO_FACTOR_AUTH else 5


class OTPStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def issue_otp(self, record: OTPCode) -> OTPCode: ...

    def consume_otp_attempt(
        self, user_id: str, purpose: OTPPurpose, code: str, now: datetime
    ) -> OTPAttempt: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def mark_phone_verified(self, user_id: str) -> Optional[User]: ...

    def purge_otp_codes(self, before: datetime) -> int: ...


class Dispatcher(Protocol):
    async def send_message(
        self, channel: Channel, to: str, template_id: str, variables: dict
    ) -> bool: ...


@dataclass
class OTPIssue:
    code: str
    expires_at: datetime
    channel: Channel
    delivered: bool = False


def _generate_code() -> str:
    return str(secrets.randbelow(900000) + 100000)


def default_channel(user: User, purpose: OTPPurpose) -> Optional[Channel]:
    """Channel a code for ``purpose`` goes to when the caller does not pick one."""
    if purpose is OTPPurpose.EMAIL_VERIFICATION:
        return "email"
    if purpose is OTPPurpose.PHONE_VERIFICATION:
        return "sms"
    if user.email:
        return "email"
    if user.phone:
        return "sms"
    return None


class OTPManager:
    """Issues and verifies one-time codes.

    At most one code per (user, purpose) is live at a time: issuing a new one
    burns every earlier unused code in the same store operation. Verification
    is a single atomic attempt against the store so concurrent guesses cannot
    exceed the attempt budget.
    """

    def __init__(self, store: OTPStore, dispatcher: Dispatcher) -> None:
        self.store = store
        self.dispatcher = dispatcher

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def generate(
        self,
        user_id: str,
        purpose: OTPPurpose,
        *,
        channel: Optional[Channel] = None,
    ) -> OTPIssue:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        channel = channel or default_channel(user, purpose)
        if channel == "email":
            destination = user.email
        elif channel == "sms":
            destination = user.phone
        else:
            destination = None
        if not destination:
            raise BadRequestError(
                "no contact channel available",
                detail={"channel": channel, "purpose": purpose.value},
            )

        now = self._now()
        window = OTP_WINDOWS[purpose]
        record = OTPCode(
            id=generate_uuid(),
            user_id=user.id,
            code=_generate_code(),
            purpose=purpose,
            created_at=now,
            expires_at=now + window,
            max_attempts=max_attempts_for(purpose),
        )
        self.store.issue_otp(record)
        logger.info(
            "otp_generated", user_id=user.id, purpose=purpose.value, channel=channel
        )

        # The code stays valid if delivery fails; it can be resent
        delivered = False
        try:
            delivered = await self.dispatcher.send_message(
                channel,
                destination,
                purpose.value,
                {"code": record.code, "minutes": int(window.total_seconds() // 60)},
            )
        except Exception as exc:
            logger.error(
                "otp_dispatch_error",
                user_id=user.id,
                purpose=purpose.value,
                channel=channel,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        else:
            if not delivered:
                logger.warning(
                    "otp_dispatch_failed",
                    user_id=user.id,
                    purpose=purpose.value,
                    channel=channel,
                )
        return OTPIssue(
            code=record.code,
            expires_at=record.expires_at,
            channel=channel,
            delivered=bool(delivered),
        )

    async def verify(self, user_id: str, code: str, purpose: OTPPurpose) -> bool:
        outcome = self.store.consume_otp_attempt(user_id, purpose, code, self._now())
        status = outcome.status
        if status is OTPAttemptStatus.MISSING:
            raise BadRequestError("no active code", detail={"purpose": purpose.value})
        if status is OTPAttemptStatus.EXHAUSTED:
            logger.info("otp_exhausted", user_id=user_id, purpose=purpose.value)
            raise BadRequestError(
                "maximum verification attempts exceeded",
                detail={"purpose": purpose.value},
            )
        if status in (OTPAttemptStatus.MISMATCH, OTPAttemptStatus.BURNED):
            remaining = max(0, outcome.max_attempts - outcome.attempts)
            logger.info(
                "otp_mismatch",
                user_id=user_id,
                purpose=purpose.value,
                attempts=outcome.attempts,
                burned=status is OTPAttemptStatus.BURNED,
            )
            raise BadRequestError(
                "invalid code",
                detail={"purpose": purpose.value, "remaining_attempts": remaining},
            )

        if purpose is OTPPurpose.EMAIL_VERIFICATION:
            self.store.mark_email_verified(user_id)
        elif purpose is OTPPurpose.PHONE_VERIFICATION:
            self.store.mark_phone_verified(user_id)
        logger.info("otp_verified", user_id=user_id, purpose=purpose.value)
        return True

    def cleanup(self) -> int:
        purged = self.store.purge_otp_codes(self._now() - OTP_RETENTION)
        if purged:
            logger.info("otp_codes_purged", count=purged)
        return purged
