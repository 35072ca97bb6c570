"""Storage interface for users, workflows, mappings and the credit ledger."""

from __future__ import annotations

from typing import Protocol

from mail_relay.storage.models import (
    DebitResult,
    MappingRecord,
    SettlementResult,
    TransactionRecord,
    UserRecord,
    WorkflowKind,
    WorkflowRecord,
    Visibility,
)


class RelayStorage(Protocol):
    def migrate(self) -> None: ...

    def ping(self) -> bool: ...

    # Users and workflows are owned by external administration; the relay only
    # reads them. The create/upsert methods exist for seeding and tests.
    def get_user_by_address(self, address: str) -> UserRecord | None: ...

    def get_user(self, user_id: int) -> UserRecord | None: ...

    def create_user(
        self, address: str, *, credits: int = 0, is_approved: bool = False
    ) -> UserRecord: ...

    def get_workflow_by_name(self, name: str) -> WorkflowRecord | None: ...

    def get_workflow(self, workflow_id: int) -> WorkflowRecord | None: ...

    def upsert_workflow(
        self,
        name: str,
        *,
        credits_per_task: int,
        kind: WorkflowKind = "native",
        visibility: Visibility = "public",
        execution_address: str | None = None,
        instruction: str | None = None,
        description: str | None = None,
        owner_user_id: int | None = None,
        is_active: bool = True,
    ) -> WorkflowRecord: ...

    def is_approved_sender(self, workflow_id: int, address: str) -> bool: ...

    def add_approved_sender(self, workflow_id: int, address: str) -> None: ...

    # Mappings.
    def create_mapping(
        self, *, original_message_id: str | None, original_sender: str, workflow: str
    ) -> tuple[MappingRecord, bool]: ...

    def get_mapping(self, mapping_id: int) -> MappingRecord | None: ...

    def get_mapping_by_correlation_id(self, message_id: str) -> MappingRecord | None: ...

    def get_mapping_by_external_id(self, external_id: str) -> MappingRecord | None: ...

    def set_external_id(self, mapping_id: int, external_id: str) -> MappingRecord: ...

    def mark_mapping_acknowledged(self, mapping_id: int) -> bool: ...

    def mark_mapping_completed(self, mapping_id: int, *, credits_charged: int) -> bool: ...

    # Credit ledger.
    def debit_credits(
        self, user_id: int, amount: int, *, reason: str, mapping_id: int | None = None
    ) -> DebitResult: ...

    def grant_credits(self, user_id: int, amount: int, *, reason: str) -> TransactionRecord: ...

    def list_transactions(self, user_id: int) -> list[TransactionRecord]: ...

    def settle_mapping(
        self,
        mapping_id: int,
        *,
        user_id: int | None,
        amount: int,
        reason: str,
    ) -> SettlementResult: ...
