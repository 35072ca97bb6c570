"""Credit balances and the append-only transaction log."""

from __future__ import annotations

import logging

from mail_relay.storage.base import RelayStorage
from mail_relay.storage.models import DebitResult, TransactionRecord

logger = logging.getLogger(__name__)


class CreditLedger:
    """Balance mutations always travel with a transaction row in the same write."""

    def __init__(self, storage: RelayStorage) -> None:
        self.storage = storage

    def debit(
        self, user_id: int, amount: int, *, reason: str, mapping_id: int | None = None
    ) -> DebitResult:
        result = self.storage.debit_credits(
            user_id, amount, reason=reason, mapping_id=mapping_id
        )
        if not result.applied:
            logger.warning(
                "credits event=debit_refused user_id=%s amount=%s balance=%s",
                user_id,
                amount,
                result.balance,
            )
        return result

    def grant(self, user_id: int, amount: int, *, reason: str) -> TransactionRecord:
        return self.storage.grant_credits(user_id, amount, reason=reason)

    def balance_matches_history(self, user_id: int) -> bool:
        user = self.storage.get_user(user_id)
        if user is None:
            raise KeyError(f"User {user_id} does not exist")
        total = sum(t.credits_delta for t in self.storage.list_transactions(user_id))
        return total == user.credits
