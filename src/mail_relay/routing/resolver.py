"""Resolve a destination address to an active workflow the requester may use."""

from __future__ import annotations

from mail_relay.errors import WorkflowForbidden, WorkflowNotFound
from mail_relay.storage.base import RelayStorage
from mail_relay.storage.models import UserRecord, WorkflowRecord


def routing_key_for(address: str) -> str:
    """Local part of the destination address, lowercased."""
    return address.split("@", 1)[0].strip().lower()


class WorkflowResolver:
    """Read-only lookup of workflows plus the private-visibility rule."""

    def __init__(self, storage: RelayStorage) -> None:
        self.storage = storage

    def resolve(self, routing_key: str, requester: UserRecord) -> WorkflowRecord:
        workflow = self.storage.get_workflow_by_name(routing_key)
        if workflow is None or not workflow.is_active:
            raise WorkflowNotFound(routing_key)
        if not self.is_authorized(workflow, requester):
            raise WorkflowForbidden(routing_key, requester.address)
        return workflow

    def is_authorized(self, workflow: WorkflowRecord, requester: UserRecord) -> bool:
        if workflow.visibility == "public":
            return True
        if workflow.owner_user_id is not None and workflow.owner_user_id == requester.user_id:
            return True
        return self.storage.is_approved_sender(workflow.workflow_id, requester.address)
