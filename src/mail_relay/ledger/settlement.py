"""Act-then-commit settlement keyed by mapping id.

Phase 1 performs the external side effect (delivering the result email). Phase 2
commits the debit, the transaction row and the completion in one storage
transaction that re-checks the mapping status. A crash between the phases leaves
the mapping unsettled; a redelivery repeats phase 1 and commits once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from mail_relay.ledger.mappings import MappingLedger
from mail_relay.storage.models import MappingRecord, SettlementResult

logger = logging.getLogger(__name__)


class Settlement:
    def __init__(self, mappings: MappingLedger) -> None:
        self.mappings = mappings

    def run(
        self,
        mapping_id: int,
        *,
        act: Callable[[MappingRecord], object],
        user_id: int | None,
        amount: int,
        reason: str,
    ) -> SettlementResult:
        mapping = self.mappings.get(mapping_id)
        if mapping is None:
            raise KeyError(f"Mapping {mapping_id} does not exist")
        if mapping.status == "completed":
            logger.info("settlement event=already_completed mapping_id=%s", mapping_id)
            return SettlementResult(applied=False, mapping=mapping)

        act(mapping)

        result = self.mappings.settle(mapping, user_id=user_id, amount=amount, reason=reason)
        if result.applied:
            logger.info(
                "settlement event=committed mapping_id=%s charged=%s debited=%s",
                mapping_id,
                result.charged,
                result.debited,
            )
        else:
            logger.info("settlement event=lost_race mapping_id=%s", mapping_id)
        return result
