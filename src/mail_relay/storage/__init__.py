"""Storage backends and models."""

from mail_relay.storage.base import RelayStorage
from mail_relay.storage.memory import InMemoryRelayStorage
from mail_relay.storage.models import (
    DebitResult,
    MappingRecord,
    SettlementResult,
    TransactionRecord,
    UserRecord,
    WorkflowRecord,
)
from mail_relay.storage.postgres import PostgresRelayStorage

__all__ = [
    "DebitResult",
    "InMemoryRelayStorage",
    "MappingRecord",
    "PostgresRelayStorage",
    "RelayStorage",
    "SettlementResult",
    "TransactionRecord",
    "UserRecord",
    "WorkflowRecord",
]
