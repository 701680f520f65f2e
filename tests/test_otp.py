"""One-time code issuance, verification and attempt accounting."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from warden.service.errors import BadRequestError, NotFoundError
from warden.service.otp import OTP_WINDOWS, OTPManager
from warden.storage.models import OTPPurpose


@pytest.fixture
def otp(store, dispatcher):
    return OTPManager(store, dispatcher)


@pytest.fixture
def user(store):
    return store.create_user("carol", email="carol@example.com", phone="+15550001111")


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestGenerate:
    async def test_code_is_six_digits_and_sent(self, otp, user, dispatcher):
        issued = await otp.generate(user.id, OTPPurpose.EMAIL_VERIFICATION)
        assert len(issued.code) == 6 and issued.code.isdigit()
        assert issued.channel == "email"
        assert issued.delivered is True
        message = dispatcher.sent[-1]
        assert message["to"] == "carol@example.com"
        assert message["code"] == issued.code
        assert message["minutes"] == 60

    async def test_windows_per_purpose(self, otp, user):
        for purpose, window in OTP_WINDOWS.items():
            issued = await otp.generate(user.id, purpose)
            lifetime = issued.expires_at - otp.store.list_otp_codes(user.id, purpose)[-1].created_at
            assert lifetime == window
        assert OTP_WINDOWS[OTPPurpose.PHONE_VERIFICATION] == timedelta(minutes=15)

    async def test_phone_verification_goes_by_sms(self, otp, user, dispatcher):
        issued = await otp.generate(user.id, OTPPurpose.PHONE_VERIFICATION)
        assert issued.channel == "sms"
        assert dispatcher.sent[-1]["to"] == "+15550001111"

    async def test_unknown_user(self, otp):
        with pytest.raises(NotFoundError):
            await otp.generate("missing", OTPPurpose.PASSWORD_RESET)

    async def test_missing_destination(self, otp, store):
        user = store.create_user("dave", email="dave@example.com")
        with pytest.raises(BadRequestError):
            await otp.generate(user.id, OTPPurpose.PHONE_VERIFICATION)

    async def test_dispatch_failure_keeps_code_valid(self, store, user):
        failing = AsyncMock()
        failing.send_message.side_effect = ConnectionError("smtp down")
        manager = OTPManager(store, failing)
        issued = await manager.generate(user.id, OTPPurpose.EMAIL_VERIFICATION)
        assert issued.delivered is False
        assert await manager.verify(user.id, issued.code, OTPPurpose.EMAIL_VERIFICATION)

    async def test_new_code_invalidates_previous(self, otp, user):
        first = await otp.generate(user.id, OTPPurpose.PASSWORD_RESET)
        second = await otp.generate(user.id, OTPPurpose.PASSWORD_RESET)
        if first.code != second.code:
            with pytest.raises(BadRequestError):
                await otp.verify(user.id, first.code, OTPPurpose.PASSWORD_RESET)
        assert await otp.verify(user.id, second.code, OTPPurpose.PASSWORD_RESET)
        live = [c for c in otp.store.list_otp_codes(user.id, OTPPurpose.PASSWORD_RESET) if not c.is_used]
        assert live == []


class TestVerify:
    async def test_email_verification_marks_user(self, otp, user, store):
        issued = await otp.generate(user.id, OTPPurpose.EMAIL_VERIFICATION)
        assert await otp.verify(user.id, issued.code, OTPPurpose.EMAIL_VERIFICATION)
        assert store.get_user(user.id).is_email_verified is True
        assert store.get_user(user.id).is_phone_verified is False

    async def test_phone_verification_marks_user(self, otp, user, store):
        issued = await otp.generate(user.id, OTPPurpose.PHONE_VERIFICATION)
        await otp.verify(user.id, issued.code, OTPPurpose.PHONE_VERIFICATION)
        assert store.get_user(user.id).is_phone_verified is True

    async def test_code_is_single_use(self, otp, user):
        issued = await otp.generate(user.id, OTPPurpose.PASSWORD_RESET)
        await otp.verify(user.id, issued.code, OTPPurpose.PASSWORD_RESET)
        with pytest.raises(BadRequestError) as exc_info:
            await otp.verify(user.id, issued.code, OTPPurpose.PASSWORD_RESET)
        assert exc_info.value.message == "no active code"

    async def test_purpose_must_match(self, otp, user):
        issued = await otp.generate(user.id, OTPPurpose.PASSWORD_RESET)
        with pytest.raises(BadRequestError):
            await otp.verify(user.id, issued.code, OTPPurpose.EMAIL_VERIFICATION)

    async def test_fifth_attempt_can_still_succeed(self, otp, user):
        issued = await otp.generate(user.id, OTPPurpose.EMAIL_VERIFICATION)
        for expected_remaining in (4, 3, 2, 1):
            with pytest.raises(BadRequestError) as exc_info:
                await otp.verify(user.id, _wrong(issued.code), OTPPurpose.EMAIL_VERIFICATION)
            assert exc_info.value.detail["remaining_attempts"] == expected_remaining
        assert await otp.verify(user.id, issued.code, OTPPurpose.EMAIL_VERIFICATION)

    async def test_five_failures_burn_the_code(self, otp, user):
        issued = await otp.generate(user.id, OTPPurpose.EMAIL_VERIFICATION)
        for _ in range(5):
            with pytest.raises(BadRequestError):
                await otp.verify(user.id, _wrong(issued.code), OTPPurpose.EMAIL_VERIFICATION)
        with pytest.raises(BadRequestError) as exc_info:
            await otp.verify(user.id, issued.code, OTPPurpose.EMAIL_VERIFICATION)
        assert exc_info.value.message == "no active code"

    async def test_two_factor_allows_three_attempts(self, otp, user):
        issued = await otp.generate(user.id, OTPPurpose.TWO_FACTOR_AUTH)
        for _ in range(3):
            with pytest.raises(BadRequestError):
                await otp.verify(user.id, _wrong(issued.code), OTPPurpose.TWO_FACTOR_AUTH)
        with pytest.raises(BadRequestError):
            await otp.verify(user.id, issued.code, OTPPurpose.TWO_FACTOR_AUTH)

    async def test_expired_code_rejected(self, otp, user, store):
        issued = await otp.generate(user.id, OTPPurpose.PASSWORD_RESET)
        record = store.list_otp_codes(user.id, OTPPurpose.PASSWORD_RESET)[-1]
        record.expires_at = record.created_at - timedelta(seconds=1)
        with pytest.raises(BadRequestError) as exc_info:
            await otp.verify(user.id, issued.code, OTPPurpose.PASSWORD_RESET)
        assert exc_info.value.message == "no active code"


class TestCleanup:
    async def test_purges_old_used_codes(self, otp, user, store):
        issued = await otp.generate(user.id, OTPPurpose.PASSWORD_RESET)
        await otp.verify(user.id, issued.code, OTPPurpose.PASSWORD_RESET)
        record = store.list_otp_codes(user.id, OTPPurpose.PASSWORD_RESET)[-1]
        record.created_at -= timedelta(days=3)
        record.expires_at -= timedelta(days=3)
        assert otp.cleanup() == 1
        assert store.list_otp_codes(user.id) == []
