"""In-memory storage backend for tests only."""

from __future__ import annotations

from datetime import UTC, datetime

from mail_relay.storage.models import (
    DebitResult,
    MappingRecord,
    SettlementResult,
    TransactionRecord,
    UserRecord,
    Visibility,
    WorkflowKind,
    WorkflowRecord,
)


class InMemoryRelayStorage:
    """Simple in-memory implementation that mirrors the conditional SQL semantics."""

    def __init__(self) -> None:
        self._users: dict[int, UserRecord] = {}
        self._workflows: dict[int, WorkflowRecord] = {}
        self._approved: set[tuple[int, str]] = set()
        self._mappings: dict[int, MappingRecord] = {}
        self._transactions: list[TransactionRecord] = []
        self._next_id = {"user": 1, "workflow": 1, "mapping": 1, "transaction": 1}

    def migrate(self) -> None:
        return None

    def ping(self) -> bool:
        return True

    def get_user_by_address(self, address: str) -> UserRecord | None:
        lowered = address.lower()
        for user in self._users.values():
            if user.address == lowered:
                return user
        return None

    def get_user(self, user_id: int) -> UserRecord | None:
        return self._users.get(user_id)

    def create_user(
        self, address: str, *, credits: int = 0, is_approved: bool = False
    ) -> UserRecord:
        if self.get_user_by_address(address) is not None:
            raise ValueError(f"User {address} already exists")
        record = UserRecord(
            user_id=self._allocate("user"),
            address=address.lower(),
            credits=credits,
            is_approved=is_approved,
            created_at=datetime.now(UTC),
        )
        self._users[record.user_id] = record
        if credits > 0:
            self._append_transaction(record.user_id, credits, "Initial credits", None)
        return record

    def get_workflow_by_name(self, name: str) -> WorkflowRecord | None:
        lowered = name.lower()
        for workflow in self._workflows.values():
            if workflow.name == lowered and workflow.is_active:
                return workflow
        return None

    def get_workflow(self, workflow_id: int) -> WorkflowRecord | None:
        return self._workflows.get(workflow_id)

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
    ) -> WorkflowRecord:
        lowered = name.lower()
        existing = next((w for w in self._workflows.values() if w.name == lowered), None)
        record = WorkflowRecord(
            workflow_id=existing.workflow_id if existing else self._allocate("workflow"),
            name=lowered,
            kind=kind,
            visibility=visibility,
            is_active=is_active,
            credits_per_task=credits_per_task,
            execution_address=execution_address,
            instruction=instruction,
            description=description,
            owner_user_id=owner_user_id,
        )
        self._workflows[record.workflow_id] = record
        return record

    def is_approved_sender(self, workflow_id: int, address: str) -> bool:
        return (workflow_id, address.lower()) in self._approved

    def add_approved_sender(self, workflow_id: int, address: str) -> None:
        self._approved.add((workflow_id, address.lower()))

    def create_mapping(
        self, *, original_message_id: str | None, original_sender: str, workflow: str
    ) -> tuple[MappingRecord, bool]:
        if original_message_id:
            for mapping in self._mappings.values():
                if mapping.original_message_id == original_message_id:
                    return mapping, False
        record = MappingRecord(
            mapping_id=self._allocate("mapping"),
            original_message_id=original_message_id,
            original_sender=original_sender.lower(),
            workflow=workflow,
            created_at=datetime.now(UTC),
        )
        self._mappings[record.mapping_id] = record
        return record, True

    def get_mapping(self, mapping_id: int) -> MappingRecord | None:
        return self._mappings.get(mapping_id)

    def get_mapping_by_correlation_id(self, message_id: str) -> MappingRecord | None:
        for mapping in self._mappings.values():
            if message_id in (mapping.original_message_id, mapping.external_id):
                return mapping
        return None

    def get_mapping_by_external_id(self, external_id: str) -> MappingRecord | None:
        for mapping in self._mappings.values():
            if mapping.external_id == external_id:
                return mapping
        return None

    def set_external_id(self, mapping_id: int, external_id: str) -> MappingRecord:
        current = self._require_mapping(mapping_id)
        updated = current.model_copy(update={"external_id": external_id})
        self._mappings[mapping_id] = updated
        return updated

    def mark_mapping_acknowledged(self, mapping_id: int) -> bool:
        current = self._require_mapping(mapping_id)
        if current.status != "pending":
            return False
        self._mappings[mapping_id] = current.model_copy(update={"status": "acknowledged"})
        return True

    def mark_mapping_completed(self, mapping_id: int, *, credits_charged: int) -> bool:
        current = self._require_mapping(mapping_id)
        if current.status == "completed":
            return False
        self._mappings[mapping_id] = current.model_copy(
            update={
                "status": "completed",
                "credits_charged": credits_charged,
                "completed_at": datetime.now(UTC),
            }
        )
        return True

    def debit_credits(
        self, user_id: int, amount: int, *, reason: str, mapping_id: int | None = None
    ) -> DebitResult:
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        user = self._users.get(user_id)
        if user is None or user.credits < amount:
            return DebitResult(applied=False, balance=user.credits if user else None)
        balance = user.credits - amount
        self._users[user_id] = user.model_copy(update={"credits": balance})
        transaction = self._append_transaction(user_id, -amount, reason, mapping_id)
        return DebitResult(applied=True, balance=balance, transaction=transaction)

    def grant_credits(self, user_id: int, amount: int, *, reason: str) -> TransactionRecord:
        if amount <= 0:
            raise ValueError("Grant amount must be positive")
        user = self._users.get(user_id)
        if user is None:
            raise KeyError(f"User {user_id} does not exist")
        self._users[user_id] = user.model_copy(update={"credits": user.credits + amount})
        return self._append_transaction(user_id, amount, reason, None)

    def list_transactions(self, user_id: int) -> list[TransactionRecord]:
        return [t for t in self._transactions if t.user_id == user_id]

    def settle_mapping(
        self,
        mapping_id: int,
        *,
        user_id: int | None,
        amount: int,
        reason: str,
    ) -> SettlementResult:
        current = self._require_mapping(mapping_id)
        if current.status == "completed":
            return SettlementResult(applied=False, mapping=current)

        debited = False
        if user_id is not None and amount > 0:
            debited = self.debit_credits(
                user_id, amount, reason=reason, mapping_id=mapping_id
            ).applied
        charged = amount if debited else 0
        self.mark_mapping_completed(mapping_id, credits_charged=charged)
        return SettlementResult(
            applied=True,
            mapping=self._mappings[mapping_id],
            debited=debited,
            charged=charged,
        )

    def _allocate(self, kind: str) -> int:
        value = self._next_id[kind]
        self._next_id[kind] += 1
        return value

    def _require_mapping(self, mapping_id: int) -> MappingRecord:
        current = self._mappings.get(mapping_id)
        if current is None:
            raise KeyError(f"Mapping {mapping_id} does not exist")
        return current

    def _append_transaction(
        self, user_id: int, delta: int, reason: str, mapping_id: int | None
    ) -> TransactionRecord:
        record = TransactionRecord(
            transaction_id=self._allocate("transaction"),
            user_id=user_id,
            credits_delta=delta,
            reason=reason,
            mapping_id=mapping_id,
            created_at=datetime.now(UTC),
        )
        self._transactions.append(record)
        return record
