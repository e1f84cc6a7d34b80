"""
Emergency notification routing.

When a welfare check ends in an emergency outcome, or the responder called
EMS, a high-priority notification event is handed to the external
notification collaborator so it can page the right staff.  The same path is
used when an emergency report could not be persisted: that failure must
reach a human instead of disappearing.

Delivery (phone, SMS, radio) is the collaborator's responsibility; this
module only builds the events, records them in the audit sink, and retries
the hand-off.
"""

from __future__ import annotations

import logging
from typing import Any

from welfaredispatch.audit import (
    AuditEmitter,
    AuditEventType,
    EventPriority,
    NotificationEvent,
    NotificationSink,
)
from welfaredispatch.models import EMERGENCY_OUTCOMES, Outcome, WelfareCheckReport

logger = logging.getLogger("welfaredispatch.notifications")


def requires_emergency_notification(outcome: Outcome, ems_called: bool) -> bool:
    return ems_called or outcome in EMERGENCY_OUTCOMES


class EmergencyNotifier:
    def __init__(
        self,
        sink: NotificationSink,
        audit: AuditEmitter,
        delivery_attempts: int = 3,
    ) -> None:
        self._sink = sink
        self._audit = audit
        self._delivery_attempts = max(1, delivery_attempts)

    def notify_emergency(self, report: WelfareCheckReport) -> bool:
        """Emit the high-priority event for an emergency report.

        Returns True if the notification collaborator accepted the event.
        """
        details = {
            "report_id": report.id,
            "alert_id": report.alert_id,
            "outcome": report.outcome.value,
            "ems_called": report.ems_called,
            "family_notified": report.family_notified,
            "transported_to": report.transported_to,
            "transport_reason": report.transport_reason,
            "officer_name": report.officer_name,
        }
        return self._route(
            AuditEventType.EMERGENCY_REPORTED,
            tenant_id=report.tenant_id,
            person_id=report.person_id,
            actor_id=report.officer_id,
            details=details,
        )

    def notify_submission_failure(
        self,
        tenant_id: str,
        person_id: str,
        actor_id: str,
        details: dict[str, Any],
    ) -> bool:
        """Escalate an emergency report that could not be saved."""
        return self._route(
            AuditEventType.EMERGENCY_REPORT_SUBMISSION_FAILED,
            tenant_id=tenant_id,
            person_id=person_id,
            actor_id=actor_id,
            details=details,
        )

    def _route(
        self,
        event_type: AuditEventType,
        tenant_id: str,
        person_id: str,
        actor_id: str,
        details: dict[str, Any],
    ) -> bool:
        self._audit.emit(
            event_type,
            tenant_id=tenant_id,
            person_id=person_id,
            actor_id=actor_id,
            details=details,
            priority=EventPriority.HIGH,
        )
        event = NotificationEvent(
            event_type=event_type,
            tenant_id=tenant_id,
            person_id=person_id,
            actor_id=actor_id,
            details=details,
        )
        for attempt in range(1, self._delivery_attempts + 1):
            try:
                self._sink.notify(event)
                return True
            except Exception:
                logger.exception(
                    "Notification %s for person %s failed (attempt %d/%d)",
                    event_type.value, person_id, attempt, self._delivery_attempts,
                )
        logger.error(
            "Notification %s for person %s undelivered after %d attempts; "
            "the high-priority audit record is the remaining signal",
            event_type.value, person_id, self._delivery_attempts,
        )
        return False
