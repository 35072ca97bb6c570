"""Workflow resolution and entitlement checks."""

from mail_relay.routing.guard import Entitlement, EntitlementGuard
from mail_relay.routing.resolver import WorkflowResolver, routing_key_for

__all__ = [
    "Entitlement",
    "EntitlementGuard",
    "WorkflowResolver",
    "routing_key_for",
]
