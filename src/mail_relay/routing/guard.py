"""Entitlement checks applied to every inbound request before dispatch."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import NoReturn

from mail_relay.errors import (
    EntitlementRejected,
    RejectionCode,
    WorkflowForbidden,
    WorkflowNotFound,
)
from mail_relay.routing.resolver import WorkflowResolver
from mail_relay.storage.base import RelayStorage
from mail_relay.storage.models import UserRecord, WorkflowRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Entitlement:
    user: UserRecord
    workflow: WorkflowRecord


class EntitlementGuard:
    """Runs the checks in a fixed order and stops at the first failure."""

    def __init__(
        self,
        storage: RelayStorage,
        *,
        resolver: WorkflowResolver | None = None,
        signup_url: str = "",
    ) -> None:
        self.storage = storage
        self.resolver = resolver or WorkflowResolver(storage)
        self.signup_url = signup_url

    def check(self, sender: str, routing_key: str) -> Entitlement:
        user = self.storage.get_user_by_address(sender)
        if user is None:
            hint = f" Sign up at {self.signup_url}" if self.signup_url else ""
            self._reject("unregistered", f"Not registered.{hint}", sender, routing_key)

        if not user.is_approved:
            self._reject("unapproved", "Account pending approval", sender, routing_key)

        try:
            workflow = self.resolver.resolve(routing_key, user)
        except WorkflowNotFound:
            self._reject(
                "unknown_workflow", f"Unknown workflow: {routing_key}", sender, routing_key
            )
        except WorkflowForbidden:
            self._reject(
                "forbidden",
                f"You are not authorized to use the {routing_key} workflow",
                sender,
                routing_key,
            )

        if user.credits < workflow.credits_per_task:
            self._reject(
                "insufficient_credits",
                (
                    f"Insufficient credits. Balance: {user.credits}, "
                    f"Required: {workflow.credits_per_task}"
                ),
                sender,
                routing_key,
            )

        return Entitlement(user=user, workflow=workflow)

    @staticmethod
    def _reject(code: RejectionCode, reason: str, sender: str, routing_key: str) -> NoReturn:
        logger.info(
            "entitlement event=rejected code=%s sender=%s workflow=%s",
            code,
            sender,
            routing_key,
        )
        raise EntitlementRejected(code, reason)
