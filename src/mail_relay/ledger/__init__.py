"""Mapping and credit ledgers."""

from mail_relay.ledger.credits import CreditLedger
from mail_relay.ledger.mappings import MappingLedger
from mail_relay.ledger.settlement import Settlement

__all__ = ["CreditLedger", "MappingLedger", "Settlement"]
