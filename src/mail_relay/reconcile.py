"""Turn completion signals from either channel into exactly one settlement per mapping.

Completion arrives as an `EmailReply` (the backend answered the forwarded mail) or
a `WebhookEvent` (the backend posted a signed `task_stopped` event). Both funnel
into `Settlement.run`, which sends the result first and commits second.

The channels charge differently: an email reply charges the workflow's configured
`credits_per_task`; a webhook charges the `credit_usage` the backend reports for
the task.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from mail_relay.backend.client import TaskBackend
from mail_relay.config.settings import Settings
from mail_relay.email.heuristics import ReplyHeuristics
from mail_relay.email.models import Attachment, InboundEmail, OutboundMessage
from mail_relay.email.outbound import MailSender
from mail_relay.email.parser import extract_mapping_id
from mail_relay.errors import CorrelationMiss
from mail_relay.ledger.mappings import MappingLedger
from mail_relay.ledger.settlement import Settlement
from mail_relay.storage.base import RelayStorage
from mail_relay.storage.models import MappingRecord
from mail_relay.webhooks.models import TaskWebhookPayload

logger = logging.getLogger(__name__)

Outcome = Literal["acknowledged", "completed", "duplicate", "unmatched", "skipped"]


@dataclass(frozen=True)
class EmailReply:
    email: InboundEmail
    channel: Literal["email"] = "email"


@dataclass(frozen=True)
class WebhookEvent:
    payload: TaskWebhookPayload
    channel: Literal["webhook"] = "webhook"


CompletionEvent = EmailReply | WebhookEvent


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    mapping_id: int | None = None
    charged: int = 0


class CompletionReconciler:
    def __init__(
        self,
        storage: RelayStorage,
        mappings: MappingLedger,
        mail_sender: MailSender,
        backend: TaskBackend,
        settings: Settings,
        *,
        heuristics: ReplyHeuristics | None = None,
    ) -> None:
        self.storage = storage
        self.mappings = mappings
        self.settlement = Settlement(mappings)
        self.mail_sender = mail_sender
        self.backend = backend
        self.settings = settings
        self.heuristics = heuristics or ReplyHeuristics()

    def reconcile(self, event: CompletionEvent) -> ReconcileResult:
        try:
            if isinstance(event, EmailReply):
                return self._reconcile_email(event.email)
            return self._reconcile_webhook(event.payload)
        except CorrelationMiss as exc:
            logger.warning(
                "reconcile event=unmatched channel=%s key=%s", event.channel, exc.key
            )
            return ReconcileResult(outcome="unmatched")

    def _reconcile_email(self, email: InboundEmail) -> ReconcileResult:
        mapping = self._correlate_email(email)

        if self.heuristics.is_acknowledgment(email.text):
            self.mappings.mark_acknowledged(mapping)
            return ReconcileResult(outcome="acknowledged", mapping_id=mapping.mapping_id)

        if mapping.status == "completed":
            return self._duplicate(mapping, "email")

        workflow = self.storage.get_workflow_by_name(mapping.workflow)
        if workflow is None:
            logger.warning(
                "reconcile event=workflow_missing mapping_id=%s workflow=%s",
                mapping.mapping_id,
                mapping.workflow,
            )
        amount = workflow.credits_per_task if workflow else 0

        strip = self.heuristics.strip_branding
        result_message = OutboundMessage(
            from_address=self.settings.workflow_address(mapping.workflow),
            to_address=mapping.original_sender,
            subject=f"{self.settings.subject_tag} {strip(email.subject)}",
            text=strip(email.text),
            html=strip(email.html) if email.html else None,
            attachments=email.attachments,
            in_reply_to=mapping.original_message_id,
        )
        return self._settle(mapping, result_message, amount)

    def _reconcile_webhook(self, payload: TaskWebhookPayload) -> ReconcileResult:
        detail = payload.task_detail
        if payload.event_type != "task_stopped" or detail is None:
            logger.info(
                "reconcile event=ignored channel=webhook event_type=%s event_id=%s",
                payload.event_type,
                payload.event_id,
            )
            return ReconcileResult(outcome="skipped")

        if detail.stop_reason != "finish":
            logger.info(
                "reconcile event=skipped channel=webhook task_id=%s stop_reason=%s",
                detail.task_id,
                detail.stop_reason,
            )
            return ReconcileResult(outcome="skipped")

        mapping = self.mappings.find_by_external_id(detail.task_id)
        if mapping is None:
            raise CorrelationMiss(detail.task_id)
        if mapping.status == "completed":
            return self._duplicate(mapping, "webhook")

        # Both calls may raise ExternalServiceError; nothing has been mutated yet.
        attachments = [
            Attachment(filename=a.file_name, content=self.backend.download_attachment(a.url))
            for a in detail.attachments
        ]
        report = self.backend.get_task(detail.task_id)

        result_message = OutboundMessage(
            from_address=self.settings.workflow_address(mapping.workflow),
            to_address=mapping.original_sender,
            subject=f"Re: Your {mapping.workflow} task",
            text=detail.message,
            attachments=attachments,
        )
        # When the balance cannot cover the reported usage, credits_charged records 0
        # (what was debited), not the usage itself, so it always matches the ledger.
        return self._settle(mapping, result_message, report.credit_usage)

    def _correlate_email(self, email: InboundEmail) -> MappingRecord:
        mapping = self.mappings.find_by_correlation_id(email.in_reply_to)
        if mapping is not None:
            return mapping
        mapping_id = extract_mapping_id(email.text) or extract_mapping_id(email.html)
        mapping = self.mappings.get(mapping_id) if mapping_id is not None else None
        if mapping is None:
            raise CorrelationMiss(email.in_reply_to or email.message_id or email.subject)
        return mapping

    def _settle(
        self, mapping: MappingRecord, message: OutboundMessage, amount: int
    ) -> ReconcileResult:
        user = self.storage.get_user_by_address(mapping.original_sender)
        if user is None:
            logger.warning(
                "reconcile event=sender_missing mapping_id=%s sender=%s",
                mapping.mapping_id,
                mapping.original_sender,
            )

        result = self.settlement.run(
            mapping.mapping_id,
            act=lambda _: self.mail_sender.send(message),
            user_id=user.user_id if user else None,
            amount=amount,
            reason=f"Task: {mapping.workflow}",
        )
        if not result.applied:
            return self._duplicate(result.mapping, "settlement")
        if user is not None and amount > 0 and not result.debited:
            logger.warning(
                "reconcile event=debit_skipped mapping_id=%s user_id=%s amount=%s",
                mapping.mapping_id,
                user.user_id,
                amount,
            )
        return ReconcileResult(
            outcome="completed", mapping_id=mapping.mapping_id, charged=result.charged
        )

    @staticmethod
    def _duplicate(mapping: MappingRecord, channel: str) -> ReconcileResult:
        logger.info(
            "reconcile event=duplicate channel=%s mapping_id=%s", channel, mapping.mapping_id
        )
        return ReconcileResult(outcome="duplicate", mapping_id=mapping.mapping_id)
