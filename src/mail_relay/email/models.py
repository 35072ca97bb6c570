"""Email message shapes used by intake, dispatch and reconciliation."""

from __future__ import annotations

from pydantic import BaseModel, Field


class Attachment(BaseModel):
    filename: str
    content_type: str = "application/octet-stream"
    content: bytes


class InboundEmail(BaseModel):
    """One delivery from the inbound parse webhook, already normalized."""

    from_address: str
    to_address: str
    subject: str = ""
    text: str = ""
    html: str = ""
    # Normalized: no surrounding whitespace or angle brackets.
    message_id: str | None = None
    in_reply_to: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)


class OutboundMessage(BaseModel):
    from_address: str
    to_address: str
    subject: str
    text: str
    html: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    in_reply_to: str | None = None
