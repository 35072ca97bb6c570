from mail_relay.webhooks.models import TaskDetail, TaskWebhookPayload, WebhookAttachment
from mail_relay.webhooks.verifier import CachedKey, WebhookVerifier

__all__ = [
    "CachedKey",
    "TaskDetail",
    "TaskWebhookPayload",
    "WebhookAttachment",
    "WebhookVerifier",
]
