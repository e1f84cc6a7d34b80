"""
Audit and notification sinks.

Every alert open/update/close, every report submission and every profile
write is emitted as a structured ``AuditRecord``.  Emergency outcomes are
additionally pushed to a ``NotificationSink`` as high-priority events so an
external paging collaborator can reach the right staff.

Storage and viewing of audit records belong to an external collaborator.
``InMemoryAuditLog`` and ``InMemoryNotificationSink`` are the in-process
sinks used by the example and the tests; queries on them are always scoped
by ``tenant_id``.
"""

from __future__ import annotations

import enum
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from welfaredispatch.models import utc_now

logger = logging.getLogger("welfaredispatch.audit")


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    # Alert lifecycle
    ALERT_OPENED = "ALERT_OPENED"
    ALERT_UPDATED = "ALERT_UPDATED"
    ALERT_DISPATCHED = "ALERT_DISPATCHED"
    ALERT_RETRACTED = "ALERT_RETRACTED"
    ALERT_CLOSED = "ALERT_CLOSED"

    # Reports
    REPORT_SUBMITTED = "REPORT_SUBMITTED"
    REPORT_FOLLOWUP_UPDATED = "REPORT_FOLLOWUP_UPDATED"
    EMERGENCY_REPORTED = "EMERGENCY_REPORTED"
    EMERGENCY_REPORT_SUBMISSION_FAILED = "EMERGENCY_REPORT_SUBMISSION_FAILED"

    # Profiles
    PROFILE_UPSERTED = "PROFILE_UPSERTED"
    PROFILE_CONSENT_MISSING = "PROFILE_CONSENT_MISSING"


class EventPriority(str, enum.Enum):
    NORMAL = "normal"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class AuditRecord(BaseModel):
    """One structured audit event."""

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: AuditEventType
    tenant_id: str
    person_id: str
    actor_id: str = Field(..., description="Responder ID, editor ID, or SYSTEM.")
    timestamp: datetime = Field(default_factory=utc_now)
    priority: EventPriority = EventPriority.NORMAL
    details: dict[str, Any] = Field(default_factory=dict)


class NotificationEvent(BaseModel):
    """High-priority event handed to the external notification collaborator."""

    event_type: AuditEventType
    tenant_id: str
    person_id: str
    actor_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    details: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Sink interfaces
# ---------------------------------------------------------------------------

class AuditSink(Protocol):
    def write(self, record: AuditRecord) -> None: ...


class NotificationSink(Protocol):
    def notify(self, event: NotificationEvent) -> None: ...


# ---------------------------------------------------------------------------
# In-process sinks
# ---------------------------------------------------------------------------

class InMemoryAuditLog:
    """Append-only in-process audit sink.

    There is no update or delete.  Appends are serialized so concurrent
    writers keep a single total order.
    """

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []
        self._lock = threading.Lock()

    def write(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)
        if record.priority == EventPriority.HIGH:
            logger.warning(
                "High-priority audit event %s tenant=%s person=%s",
                record.event_type.value, record.tenant_id, record.person_id,
            )

    def query(
        self,
        tenant_id: str,
        event_type: Optional[AuditEventType] = None,
        person_id: Optional[str] = None,
        priority: Optional[EventPriority] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditRecord]:
        """Return copies of the tenant's records matching every given filter."""
        with self._lock:
            records = list(self._records)
        results = []
        for record in records:
            if record.tenant_id != tenant_id:
                continue
            if event_type is not None and record.event_type != event_type:
                continue
            if person_id is not None and record.person_id != person_id:
                continue
            if priority is not None and record.priority != priority:
                continue
            if time_start is not None and record.timestamp < time_start:
                continue
            if time_end is not None and record.timestamp > time_end:
                continue
            results.append(record.model_copy(deep=True))
        return results

    def __len__(self) -> int:
        return len(self._records)


class InMemoryNotificationSink:
    """Collects notification events; delivery is someone else's job."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []
        self._lock = threading.Lock()

    def notify(self, event: NotificationEvent) -> None:
        with self._lock:
            self.events.append(event)

    def for_tenant(self, tenant_id: str) -> list[NotificationEvent]:
        with self._lock:
            return [e for e in self.events if e.tenant_id == tenant_id]


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------

class AuditEmitter:
    """Builds audit records and forwards them to the configured sink."""

    def __init__(self, sink: AuditSink) -> None:
        self._sink = sink

    def emit(
        self,
        event_type: AuditEventType,
        tenant_id: str,
        person_id: str,
        actor_id: str = "SYSTEM",
        details: Optional[dict[str, Any]] = None,
        priority: EventPriority = EventPriority.NORMAL,
        timestamp: Optional[datetime] = None,
    ) -> AuditRecord:
        record = AuditRecord(
            event_type=event_type,
            tenant_id=tenant_id,
            person_id=person_id,
            actor_id=actor_id,
            priority=priority,
            details=details or {},
            timestamp=timestamp or utc_now(),
        )
        self._sink.write(record)
        return record
