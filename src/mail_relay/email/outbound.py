"""Outbound mail: the sender protocol, the SendGrid adapter and canned notices."""

from __future__ import annotations

import base64
import logging
from typing import Any, Protocol

from mail_relay.config.settings import Settings
from mail_relay.email.models import OutboundMessage
from mail_relay.transport import HttpTransport

logger = logging.getLogger(__name__)


class MailSender(Protocol):
    """Delivers one message and returns the provider's message id when it has one."""

    def send(self, message: OutboundMessage) -> str | None: ...


class SendGridMailSender:
    """Minimal SendGrid v3 `mail/send` adapter."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.sendgrid.com/v3",
        timeout_s: float = 15.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        self.transport = HttpTransport(
            service="SendGrid",
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout_s=timeout_s,
            max_retries=max_retries,
            backoff_s=backoff_s,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> SendGridMailSender:
        return cls(
            api_key=settings.sendgrid_api_key,
            base_url=settings.sendgrid_base_url,
            timeout_s=settings.http_timeout_s,
            max_retries=settings.http_max_retries,
            backoff_s=settings.http_backoff_s,
        )

    def send(self, message: OutboundMessage) -> str | None:
        _, headers = self.transport.send("POST", "/mail/send", payload=build_payload(message))
        message_id = headers.get("X-Message-Id")
        logger.info(
            "mail event=sent to=%s subject=%r message_id=%s",
            message.to_address,
            message.subject,
            message_id,
        )
        return message_id or None


def build_payload(message: OutboundMessage) -> dict[str, Any]:
    content = [{"type": "text/plain", "value": message.text or " "}]
    # SendGrid requires text/plain first; html falls back to the text body.
    content.append({"type": "text/html", "value": message.html or message.text or " "})
    headers = dict(message.headers)
    if message.in_reply_to:
        wrapped = f"<{message.in_reply_to.strip('<>')}>"
        headers["In-Reply-To"] = wrapped
        headers["References"] = wrapped

    payload: dict[str, Any] = {
        "personalizations": [{"to": [{"email": message.to_address}]}],
        "from": {"email": message.from_address},
        "subject": message.subject,
        "content": content,
    }
    if headers:
        payload["headers"] = headers
    if message.attachments:
        payload["attachments"] = [
            {
                "content": base64.b64encode(a.content).decode("ascii"),
                "filename": a.filename,
                "type": a.content_type,
                "disposition": "attachment",
            }
            for a in message.attachments
        ]
    return payload


def bounce_message(settings: Settings, to_address: str, reason: str) -> OutboundMessage:
    return OutboundMessage(
        from_address=settings.noreply_address(),
        to_address=to_address,
        subject=f"{settings.subject_tag} Request Could Not Be Processed",
        text=(
            "Your email could not be processed.\n\n"
            f"Reason: {reason}\n\n"
            "If you believe this is an error, please contact support."
        ),
    )


def apology_message(
    settings: Settings, to_address: str, workflow: str, in_reply_to: str | None = None
) -> OutboundMessage:
    return OutboundMessage(
        from_address=settings.workflow_address(workflow),
        to_address=to_address,
        subject=f"{settings.subject_tag} Your {workflow} request could not be started",
        text=(
            f"We could not start your {workflow} request because the task service "
            "did not accept it.\n\n"
            "No credits were charged. Please try again later."
        ),
        in_reply_to=in_reply_to,
    )
