"""Per-request correlation records and their guarded state transitions."""

from __future__ import annotations

import logging

from mail_relay.email.parser import normalize_message_id
from mail_relay.storage.base import RelayStorage
from mail_relay.storage.models import MappingRecord, SettlementResult

logger = logging.getLogger(__name__)


class MappingLedger:
    """Creates mappings idempotently and moves them pending → acknowledged → completed."""

    def __init__(self, storage: RelayStorage) -> None:
        self.storage = storage

    def create(
        self, original_id: str | None, sender: str, workflow: str
    ) -> tuple[MappingRecord, bool]:
        """Return `(mapping, created)`; a redelivered message id yields the existing row."""
        message_id = normalize_message_id(original_id)
        if message_id:
            existing = self.storage.get_mapping_by_correlation_id(message_id)
            if existing is not None and existing.original_message_id == message_id:
                logger.info(
                    "mapping event=duplicate_inbound mapping_id=%s message_id=%s",
                    existing.mapping_id,
                    message_id,
                )
                return existing, False
        mapping, created = self.storage.create_mapping(
            original_message_id=message_id,
            original_sender=sender,
            workflow=workflow,
        )
        if created:
            logger.info(
                "mapping event=created mapping_id=%s workflow=%s sender=%s",
                mapping.mapping_id,
                workflow,
                sender,
            )
        return mapping, created

    def attach_external_id(self, mapping: MappingRecord, external_id: str) -> MappingRecord:
        return self.storage.set_external_id(
            mapping.mapping_id, normalize_message_id(external_id) or external_id
        )

    def mark_acknowledged(self, mapping: MappingRecord) -> bool:
        changed = self.storage.mark_mapping_acknowledged(mapping.mapping_id)
        logger.info(
            "mapping event=acknowledged mapping_id=%s changed=%s", mapping.mapping_id, changed
        )
        return changed

    def mark_completed(self, mapping: MappingRecord, credits_charged: int) -> bool:
        if mapping.status == "completed":
            return False
        return self.storage.mark_mapping_completed(
            mapping.mapping_id, credits_charged=credits_charged
        )

    def settle(
        self,
        mapping: MappingRecord,
        *,
        user_id: int | None,
        amount: int,
        reason: str,
    ) -> SettlementResult:
        """Debit (when possible) and complete in one storage transaction."""
        return self.storage.settle_mapping(
            mapping.mapping_id, user_id=user_id, amount=amount, reason=reason
        )

    def get(self, mapping_id: int) -> MappingRecord | None:
        return self.storage.get_mapping(mapping_id)

    def find_by_correlation_id(self, message_id: str | None) -> MappingRecord | None:
        normalized = normalize_message_id(message_id)
        if not normalized:
            return None
        return self.storage.get_mapping_by_correlation_id(normalized)

    def find_by_external_id(self, external_id: str) -> MappingRecord | None:
        return self.storage.get_mapping_by_external_id(external_id)
