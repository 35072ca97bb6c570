"""Inbound intake: classify each delivery and hand it to the right component."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from mail_relay.backend.client import TaskBackend
from mail_relay.config.settings import Settings
from mail_relay.dispatch import DispatchRouter
from mail_relay.email.heuristics import ReplyHeuristics
from mail_relay.email.models import InboundEmail
from mail_relay.email.outbound import MailSender, bounce_message
from mail_relay.errors import EntitlementRejected, RejectionCode
from mail_relay.ledger.mappings import MappingLedger
from mail_relay.reconcile import (
    CompletionReconciler,
    EmailReply,
    ReconcileResult,
    WebhookEvent,
)
from mail_relay.routing.guard import EntitlementGuard
from mail_relay.routing.resolver import routing_key_for
from mail_relay.storage.base import RelayStorage
from mail_relay.webhooks.models import TaskWebhookPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntakeResult:
    outcome: Literal["dispatched", "duplicate", "bounced", "dispatch_failed"]
    mapping_id: int | None = None
    rejection: RejectionCode | None = None


class RelayService:
    """Wires the guard, router and reconciler over one storage backend."""

    def __init__(
        self,
        storage: RelayStorage,
        mail_sender: MailSender,
        backend: TaskBackend,
        settings: Settings,
        *,
        heuristics: ReplyHeuristics | None = None,
    ) -> None:
        self.storage = storage
        self.mail_sender = mail_sender
        self.settings = settings
        mappings = MappingLedger(storage)
        self.guard = EntitlementGuard(storage, signup_url=settings.signup_url)
        self.router = DispatchRouter(mappings, mail_sender, backend, settings)
        self.reconciler = CompletionReconciler(
            storage, mappings, mail_sender, backend, settings, heuristics=heuristics
        )

    def is_backend_reply(self, email: InboundEmail) -> bool:
        from_backend = email.from_address.endswith(f"@{self.settings.backend_mail_domain}")
        return from_backend and email.to_address == self.settings.relay_address.lower()

    def handle_email(self, email: InboundEmail) -> IntakeResult | ReconcileResult:
        if self.is_backend_reply(email):
            return self.reconciler.reconcile(EmailReply(email))
        return self.handle_request(email)

    def handle_request(self, email: InboundEmail) -> IntakeResult:
        sender = email.from_address
        routing_key = routing_key_for(email.to_address)
        try:
            entitlement = self.guard.check(sender, routing_key)
        except EntitlementRejected as exc:
            self.mail_sender.send(bounce_message(self.settings, sender, exc.reason))
            return IntakeResult(outcome="bounced", rejection=exc.code)

        result = self.router.dispatch(email, entitlement)
        if result.dispatched:
            outcome = "dispatched"
        elif not result.created:
            outcome = "duplicate"
        else:
            outcome = "dispatch_failed"
        logger.info(
            "intake event=%s mapping_id=%s sender=%s workflow=%s",
            outcome,
            result.mapping.mapping_id,
            sender,
            routing_key,
        )
        return IntakeResult(outcome=outcome, mapping_id=result.mapping.mapping_id)

    def handle_webhook(self, payload: TaskWebhookPayload) -> ReconcileResult:
        return self.reconciler.reconcile(WebhookEvent(payload))
