"""Exception types shared by the relay components.

Only `ExternalServiceError` and `VerificationFailure` ever reach the HTTP layer as
error statuses. Rejections and correlation misses are answered or dropped by the
component that detects them.
"""

from __future__ import annotations

from typing import Literal

RejectionCode = Literal[
    "unregistered",
    "unapproved",
    "unknown_workflow",
    "forbidden",
    "insufficient_credits",
]


class RelayError(Exception):
    """Base class for relay failures."""


class WorkflowNotFound(RelayError):
    def __init__(self, routing_key: str) -> None:
        super().__init__(f"Unknown workflow: {routing_key}")
        self.routing_key = routing_key


class WorkflowForbidden(RelayError):
    def __init__(self, routing_key: str, requester: str) -> None:
        super().__init__(f"{requester} is not authorized for workflow {routing_key}")
        self.routing_key = routing_key
        self.requester = requester


class EntitlementRejected(RelayError):
    """A request failed one of the pre-dispatch checks and must be bounced."""

    def __init__(self, code: RejectionCode, reason: str) -> None:
        super().__init__(reason)
        self.code = code
        self.reason = reason


class CorrelationMiss(RelayError):
    """No mapping matches a completion signal."""

    def __init__(self, key: str | None) -> None:
        super().__init__(f"No mapping for completion signal {key!r}")
        self.key = key


class VerificationFailure(RelayError):
    """An inbound webhook failed timestamp, signature or payload checks."""


class ExternalServiceError(RelayError):
    """An outbound call to the mail provider or task backend failed."""


class TransientDispatchFailure(RelayError):
    """The task backend could not accept an api-workflow request."""
