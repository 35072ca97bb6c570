from mail_relay.email.heuristics import ReplyHeuristics
from mail_relay.email.models import Attachment, InboundEmail, OutboundMessage
from mail_relay.email.outbound import MailSender, SendGridMailSender
from mail_relay.email.parser import normalize_message_id, parse_inbound

__all__ = [
    "Attachment",
    "InboundEmail",
    "MailSender",
    "OutboundMessage",
    "ReplyHeuristics",
    "SendGridMailSender",
    "normalize_message_id",
    "parse_inbound",
]
