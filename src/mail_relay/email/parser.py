"""Normalize inbound parse webhook fields into an `InboundEmail`."""

from __future__ import annotations

import re
from collections.abc import Mapping

from mail_relay.email.models import Attachment, InboundEmail

_BRACKETED_ADDRESS = re.compile(r"<([^>]+)>")
_BARE_ADDRESS = re.compile(r"([^\s<]+@[^\s>]+)")

# Ordered html → text substitutions.
_HTML_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"<br\s*/?>", re.IGNORECASE), "\n"),
    (re.compile(r"</p>", re.IGNORECASE), "\n\n"),
    (re.compile(r"</div>", re.IGNORECASE), "\n"),
    (re.compile(r"<[^>]+>"), ""),
    (re.compile(r"&nbsp;"), " "),
    (re.compile(r"&amp;"), "&"),
    (re.compile(r"&lt;"), "<"),
    (re.compile(r"&gt;"), ">"),
    (re.compile(r"&quot;"), '"'),
    (re.compile(r"&#39;"), "'"),
    (re.compile(r"\n{3,}"), "\n\n"),
)


def parse_inbound(
    fields: Mapping[str, str], attachments: list[Attachment] | None = None
) -> InboundEmail:
    headers = parse_headers(fields.get("headers", "") or "")
    html = fields.get("html", "") or ""
    text = fields.get("text", "") or html_to_text(html)
    return InboundEmail(
        from_address=extract_address(fields.get("from", "") or ""),
        to_address=extract_address(fields.get("to", "") or ""),
        subject=fields.get("subject", "") or "",
        text=text,
        html=html,
        message_id=normalize_message_id(headers.get("message-id")),
        in_reply_to=normalize_message_id(headers.get("in-reply-to")),
        attachments=list(attachments or []),
    )


def extract_address(header: str) -> str:
    """Pull the bare address out of `Name <addr>` forms, lowercased."""
    match = _BRACKETED_ADDRESS.search(header) or _BARE_ADDRESS.search(header)
    value = match.group(1) if match else header
    return value.strip().lower()


def parse_headers(raw: str) -> dict[str, str]:
    """Unfold a raw header block; keys are lowercased, continuation lines joined."""
    headers: dict[str, str] = {}
    current_key = ""
    current_value = ""
    for line in re.split(r"\r?\n", raw):
        if line.startswith((" ", "\t")):
            if current_key:
                current_value = f"{current_value} {line.strip()}".strip()
            continue
        if current_key:
            headers[current_key.lower()] = current_value
            current_key = ""
        name, sep, value = line.partition(":")
        if sep and name.strip():
            current_key = name.strip()
            current_value = value.strip()
    if current_key:
        headers[current_key.lower()] = current_value
    return headers


def normalize_message_id(value: str | None) -> str | None:
    if value is None:
        return None
    # In-Reply-To may carry several ids; the first is the direct parent.
    stripped = value.strip().split()[0] if value.strip() else ""
    stripped = stripped.strip("<>").strip()
    return stripped or None


def html_to_text(html: str) -> str:
    if not html:
        return ""
    text = html
    for pattern, replacement in _HTML_RULES:
        text = pattern.sub(replacement, text)
    return text.strip()


_MAPPING_TOKEN = re.compile(r"\[Mapping ID:\s*(\d+)\]")


def mapping_token(mapping_id: int) -> str:
    return f"[Mapping ID: {mapping_id}]"


def extract_mapping_id(body: str) -> int | None:
    match = _MAPPING_TOKEN.search(body or "")
    return int(match.group(1)) if match else None
