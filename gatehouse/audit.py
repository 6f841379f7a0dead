"""Security audit trail.

Audit events are where the engine records the *reason* a credential was
refused. The network caller only ever sees a generic failure; operators see
the detail here, on the ``gatehouse.audit`` logger.
"""

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .types import utcnow
from .utils import mask_sensitive_data

audit_logger = logging.getLogger("gatehouse.audit")


class AuditEventType(Enum):
    """Types of audit events."""

    # Authentication Events
    AUTH_SUCCESS = "auth.success"
    AUTH_FAILURE = "auth.failure"
    AUTH_LOGOUT = "auth.logout"

    # Authorization Events
    AUTHZ_GRANT = "authz.grant"
    AUTHZ_DENY = "authz.deny"

    # Credential Events
    CREDENTIAL_CREATE = "credential.create"
    CREDENTIAL_UPDATE = "credential.update"
    CREDENTIAL_DELETE = "credential.delete"
    CREDENTIAL_VERIFY = "credential.verify"
    CREDENTIAL_REVOKE = "credential.revoke"

    # Identity Events
    PRINCIPAL_CREATE = "principal.create"
    ROLE_ASSIGN = "role.assign"
    ROLE_REMOVE = "role.remove"

    # Security Events
    RATE_LIMIT_EXCEEDED = "rate_limit.exceeded"


_FAILURE_EVENTS = {
    AuditEventType.AUTH_FAILURE,
    AuditEventType.AUTHZ_DENY,
    AuditEventType.RATE_LIMIT_EXCEEDED,
}


@dataclass(frozen=True)
class AuditEvent:
    """A recorded audit event."""

    id: str
    event_type: AuditEventType
    principal_id: str | None = None
    method: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


class AuditTrail:
    """Records audit events to the audit logger and a bounded buffer.

    The buffer lets the admin surface and tests inspect recent activity
    without a storage backend.
    """

    def __init__(self, max_events: int = 1000):
        self._events: deque[AuditEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def record(
        self,
        event_type: AuditEventType,
        principal_id: str | None = None,
        method: str | None = None,
        reason: str | None = None,
        **metadata: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            principal_id=principal_id,
            method=method,
            reason=reason,
            metadata=mask_sensitive_data(metadata),
        )
        with self._lock:
            self._events.append(event)

        level = logging.WARNING if event_type in _FAILURE_EVENTS else logging.INFO
        audit_logger.log(
            level,
            f"{event_type.value} principal={principal_id} method={method} "
            f"reason={reason} metadata={event.metadata}",
        )
        return event

    def events(self, event_type: AuditEventType | None = None) -> list[AuditEvent]:
        with self._lock:
            snapshot = list(self._events)
        if event_type is None:
            return snapshot
        return [event for event in snapshot if event.event_type is event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
