from __future__ import annotations

from typing import Optional

import httpx

from warden.logging import get_logger

logger = get_logger(__name__)


def redact_number(number: str) -> str:
    digits = number.strip()
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"


class SmsService:
    """SMS delivery through the Twilio REST API.

    Disabled (every send logs and returns False) when credentials are missing
    or SMS notifications are turned off.
    """

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        api_base: str = "https://api.twilio.com",
        enabled: bool = True,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")
        self.enabled = enabled
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(
            self.enabled and self.account_sid and self.auth_token and self.from_number
        )

    async def send(self, to: str, body: str) -> bool:
        if not self.is_configured:
            logger.warning("sms_disabled", to=redact_number(to))
            return False
        url = f"{self.api_base}/2010-04-01/Accounts/{self.account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url,
                    data={"To": to, "From": self.from_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                )
        except httpx.HTTPError as exc:
            logger.error(
                "sms_request_failed",
                to=redact_number(to),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if response.status_code >= 400:
            logger.error(
                "sms_rejected",
                to=redact_number(to),
                status_code=response.status_code,
            )
            return False
        logger.info("sms_sent", to=redact_number(to))
        return True
