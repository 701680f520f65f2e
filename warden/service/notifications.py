from __future__ import annotations

import asyncio
import html
from dataclasses import dataclass
from typing import Literal, Mapping, Optional

from warden.logging import get_logger
from warden.service.email import EmailService
from warden.service.sms import SmsService

logger = get_logger(__name__)

Channel = Literal["email", "sms"]


@dataclass(frozen=True)
class MessageTemplate:
    label: str
    subject: str
    sms: str


_GENERIC_SMS = "Your verification code is: {code}. Valid for {minutes} minutes."

TEMPLATES: dict[str, MessageTemplate] = {
    "EMAIL_VERIFICATION": MessageTemplate(
        label="Email Verification",
        subject="Verify Your Email Address",
        sms=_GENERIC_SMS,
    ),
    "PHONE_VERIFICATION": MessageTemplate(
        label="Phone Verification",
        subject="Verification Code",
        sms="Your phone verification code is: {code}. Valid for {minutes} minutes.",
    ),
    "PASSWORD_RESET": MessageTemplate(
        label="Password Reset",
        subject="Password Reset Request",
        sms="Your password reset code is: {code}. Valid for {minutes} minutes.",
    ),
    "TWO_FACTOR_AUTH": MessageTemplate(
        label="Two-Factor Authentication",
        subject="Verification Code",
        sms="Your authentication code is: {code}. Valid for {minutes} minutes.",
    ),
}

_FALLBACK = MessageTemplate(label="Verification", subject="Verification Code", sms=_GENERIC_SMS)

_EMAIL_HTML = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h2>Your {label} Code</h2>
    <p>Your verification code is:</p>
    <div style="background-color: #f4f4f4; padding: 15px; font-size: 24px; text-align: center; letter-spacing: 5px; font-weight: bold;">
      {code}
    </div>
    <p>This code is valid for {minutes} minutes.</p>
    <p>If you didn't request this code, please ignore this message.</p>
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{sender}</p>
  </div>
</body>
</html>
"""

_EMAIL_TEXT = """Your {label} Code

Your verification code is: {code}

This code is valid for {minutes} minutes.

If you didn't request this code, please ignore this message.

---
{sender}
"""


class MessageDispatcher:
    """Renders one-time-code messages and routes them to email or SMS."""

    def __init__(self, email: EmailService, sms: SmsService) -> None:
        self.email = email
        self.sms = sms

    @staticmethod
    def template_for(template_id: str) -> MessageTemplate:
        return TEMPLATES.get(template_id, _FALLBACK)

    async def send_message(
        self,
        channel: Channel,
        to: str,
        template_id: str,
        variables: Optional[Mapping[str, object]] = None,
    ) -> bool:
        """Deliver a templated message. Never raises for transport failures."""
        template = self.template_for(template_id)
        values = {"label": template.label, **dict(variables or {})}
        if channel == "email":
            sender = self.email.from_name
            subject = template.subject
            html_body = _EMAIL_HTML.format(
                label=html.escape(str(values["label"])),
                code=html.escape(str(values.get("code", ""))),
                minutes=html.escape(str(values.get("minutes", ""))),
                sender=html.escape(sender),
            )
            text_body = _EMAIL_TEXT.format(
                label=values["label"],
                code=values.get("code", ""),
                minutes=values.get("minutes", ""),
                sender=sender,
            )
            # smtplib blocks; keep it off the event loop
            return await asyncio.to_thread(self.email.send, to, subject, html_body, text_body)
        if channel == "sms":
            body = template.sms.format(
                code=values.get("code", ""), minutes=values.get("minutes", "")
            )
            return await self.sms.send(to, body)
        logger.warning("message_channel_unknown", channel=channel, template_id=template_id)
        return False
