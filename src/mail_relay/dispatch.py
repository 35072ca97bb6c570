"""Forward an entitled request to the backend, either by mail or through the task API."""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass

from mail_relay.backend.client import TaskBackend
from mail_relay.config.settings import Settings
from mail_relay.email.models import InboundEmail, OutboundMessage
from mail_relay.email.outbound import MailSender, apology_message
from mail_relay.email.parser import mapping_token
from mail_relay.errors import ExternalServiceError, TransientDispatchFailure
from mail_relay.ledger.mappings import MappingLedger
from mail_relay.routing.guard import Entitlement
from mail_relay.storage.models import MappingRecord, WorkflowRecord

logger = logging.getLogger(__name__)

MAPPING_HEADER = "X-Relay-Mapping-Id"
SENDER_HEADER = "X-Relay-Original-Sender"


@dataclass(frozen=True)
class DispatchResult:
    mapping: MappingRecord
    created: bool
    dispatched: bool


class DispatchRouter:
    def __init__(
        self,
        mappings: MappingLedger,
        mail_sender: MailSender,
        backend: TaskBackend,
        settings: Settings,
    ) -> None:
        self.mappings = mappings
        self.mail_sender = mail_sender
        self.backend = backend
        self.settings = settings

    def dispatch(self, email: InboundEmail, entitlement: Entitlement) -> DispatchResult:
        workflow = entitlement.workflow
        mapping, created = self.mappings.create(
            email.message_id, email.from_address, workflow.name
        )
        if not created:
            if not _forward_pending(mapping, workflow):
                logger.info(
                    "dispatch event=skipped_redelivery mapping_id=%s message_id=%s",
                    mapping.mapping_id,
                    email.message_id,
                )
                return DispatchResult(mapping=mapping, created=False, dispatched=False)
            # An earlier delivery failed to forward; the provider is redelivering.
            logger.info(
                "dispatch event=resume_forward mapping_id=%s message_id=%s",
                mapping.mapping_id,
                email.message_id,
            )
            mapping = self._dispatch_native(email, workflow, mapping)
            return DispatchResult(mapping=mapping, created=False, dispatched=True)

        if workflow.kind == "native":
            mapping = self._dispatch_native(email, workflow, mapping)
            return DispatchResult(mapping=mapping, created=True, dispatched=True)

        try:
            mapping = self._dispatch_api(email, workflow, mapping)
        except TransientDispatchFailure as exc:
            logger.warning(
                "dispatch event=api_failed mapping_id=%s workflow=%s reason=%s",
                mapping.mapping_id,
                workflow.name,
                exc,
            )
            self.mail_sender.send(
                apology_message(
                    self.settings, email.from_address, workflow.name, email.message_id
                )
            )
            return DispatchResult(mapping=mapping, created=True, dispatched=False)
        return DispatchResult(mapping=mapping, created=True, dispatched=True)

    def _dispatch_native(
        self, email: InboundEmail, workflow: WorkflowRecord, mapping: MappingRecord
    ) -> MappingRecord:
        sender = email.from_address
        token = mapping_token(mapping.mapping_id)
        provenance = f"[request from: {sender}]"
        message = OutboundMessage(
            from_address=self.settings.relay_address,
            to_address=workflow.execution_address or "",
            subject=email.subject,
            text=f"{provenance}\n{token}\n\n{email.text}",
            html=(
                f"<p><em>{html.escape(provenance)}</em></p>"
                f"<p><em>{html.escape(token)}</em></p>{email.html}"
                if email.html
                else None
            ),
            attachments=email.attachments,
            headers={MAPPING_HEADER: str(mapping.mapping_id), SENDER_HEADER: sender},
        )
        external_id = self.mail_sender.send(message)
        logger.info(
            "dispatch event=forwarded mapping_id=%s to=%s external_id=%s",
            mapping.mapping_id,
            workflow.execution_address,
            external_id,
        )
        if external_id:
            mapping = self.mappings.attach_external_id(mapping, external_id)
        return mapping

    def _dispatch_api(
        self, email: InboundEmail, workflow: WorkflowRecord, mapping: MappingRecord
    ) -> MappingRecord:
        prompt = email.text
        if workflow.instruction:
            prompt = f"{workflow.instruction}\n\n{email.text}"
        try:
            task = self.backend.create_task(prompt, attachments=email.attachments)
        except ExternalServiceError as exc:
            raise TransientDispatchFailure(str(exc)) from exc
        logger.info(
            "dispatch event=task_created mapping_id=%s task_id=%s",
            mapping.mapping_id,
            task.task_id,
        )
        return self.mappings.attach_external_id(mapping, task.task_id)


def _forward_pending(mapping: MappingRecord, workflow: WorkflowRecord) -> bool:
    return (
        workflow.kind == "native"
        and mapping.status == "pending"
        and mapping.external_id is None
    )
