"""
Tests for welfaredispatch.audit and welfaredispatch.notifications.

Covers: emitter record construction, tenant-scoped queries and filters,
append-only ordering, and emergency notification routing with retries.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from welfaredispatch.audit import (
    AuditEmitter,
    AuditEventType,
    EventPriority,
    InMemoryAuditLog,
    InMemoryNotificationSink,
)
from welfaredispatch.models import Outcome, Severity, WelfareCheckReport
from welfaredispatch.notifications import EmergencyNotifier, requires_emergency_notification

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class UnreliableSink:
    """Notification sink that fails its first ``failures`` deliveries."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.attempts = 0
        self.delivered = []

    def notify(self, event):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("pager gateway down")
        self.delivered.append(event)


def _make_report(outcome: Outcome = Outcome.MEDICAL_EMERGENCY, **overrides) -> WelfareCheckReport:
    data = {
        "alert_id": "a1",
        "tenant_id": "t1",
        "person_id": "p1",
        "officer_id": "officer_7",
        "check_initiated_at": NOW - timedelta(hours=1),
        "check_completed_at": NOW,
        "outcome": outcome,
        "outcome_notes": "Found on floor.",
        "severity": Severity.ERROR,
        "response_time_minutes": 60,
    }
    data.update(overrides)
    return WelfareCheckReport(**data)


# ---------------------------------------------------------------------------
# 1. Audit log
# ---------------------------------------------------------------------------

class TestAuditLog:
    def test_emit_builds_record(self):
        log = InMemoryAuditLog()
        record = AuditEmitter(log).emit(
            AuditEventType.ALERT_OPENED, "t1", "p1", details={"urgency_score": 50}, timestamp=NOW,
        )
        assert record.actor_id == "SYSTEM"
        assert record.priority == EventPriority.NORMAL
        assert record.timestamp == NOW
        assert len(log) == 1

    def test_query_scoped_by_tenant(self):
        log = InMemoryAuditLog()
        emitter = AuditEmitter(log)
        emitter.emit(AuditEventType.ALERT_OPENED, "t1", "p1")
        emitter.emit(AuditEventType.ALERT_OPENED, "t2", "p2")
        assert [r.person_id for r in log.query("t1")] == ["p1"]

    def test_query_filters(self):
        log = InMemoryAuditLog()
        emitter = AuditEmitter(log)
        emitter.emit(AuditEventType.ALERT_OPENED, "t1", "p1", timestamp=NOW - timedelta(hours=2))
        emitter.emit(AuditEventType.ALERT_CLOSED, "t1", "p1", timestamp=NOW)
        emitter.emit(AuditEventType.ALERT_OPENED, "t1", "p2", timestamp=NOW,
                     priority=EventPriority.HIGH)

        assert len(log.query("t1", event_type=AuditEventType.ALERT_OPENED)) == 2
        assert len(log.query("t1", person_id="p2")) == 1
        assert len(log.query("t1", priority=EventPriority.HIGH)) == 1
        assert len(log.query("t1", time_start=NOW - timedelta(hours=1))) == 2
        assert len(log.query("t1", time_end=NOW - timedelta(hours=1))) == 1

    def test_records_kept_in_write_order(self):
        log = InMemoryAuditLog()
        emitter = AuditEmitter(log)
        for event_type in (AuditEventType.ALERT_OPENED, AuditEventType.ALERT_DISPATCHED,
                           AuditEventType.ALERT_CLOSED):
            emitter.emit(event_type, "t1", "p1")
        assert [r.event_type for r in log.query("t1")] == [
            AuditEventType.ALERT_OPENED,
            AuditEventType.ALERT_DISPATCHED,
            AuditEventType.ALERT_CLOSED,
        ]

    def test_query_returns_copies(self):
        log = InMemoryAuditLog()
        AuditEmitter(log).emit(AuditEventType.ALERT_OPENED, "t1", "p1", details={"k": 1})
        log.query("t1")[0].details["k"] = 2
        assert log.query("t1")[0].details["k"] == 1


# ---------------------------------------------------------------------------
# 2. Emergency notifications
# ---------------------------------------------------------------------------

class TestEmergencyNotifier:
    def test_requires_notification(self):
        assert requires_emergency_notification(Outcome.MEDICAL_EMERGENCY, False)
        assert requires_emergency_notification(Outcome.NON_MEDICAL_EMERGENCY, False)
        assert requires_emergency_notification(Outcome.SENIOR_OK, True)
        assert not requires_emergency_notification(Outcome.SENIOR_NOT_HOME, False)

    def test_emergency_routed_and_audited(self):
        log = InMemoryAuditLog()
        sink = InMemoryNotificationSink()
        notifier = EmergencyNotifier(sink, AuditEmitter(log))
        assert notifier.notify_emergency(_make_report(transported_to="County General"))

        event = sink.for_tenant("t1")[0]
        assert event.event_type == AuditEventType.EMERGENCY_REPORTED
        assert event.details["transported_to"] == "County General"
        record = log.query("t1", event_type=AuditEventType.EMERGENCY_REPORTED)[0]
        assert record.priority == EventPriority.HIGH
        assert record.actor_id == "officer_7"

    def test_delivery_retried(self):
        sink = UnreliableSink(failures=2)
        notifier = EmergencyNotifier(sink, AuditEmitter(InMemoryAuditLog()), delivery_attempts=3)
        assert notifier.notify_emergency(_make_report())
        assert sink.attempts == 3
        assert len(sink.delivered) == 1

    def test_undelivered_still_audited(self):
        log = InMemoryAuditLog()
        sink = UnreliableSink(failures=10)
        notifier = EmergencyNotifier(sink, AuditEmitter(log), delivery_attempts=2)
        assert notifier.notify_submission_failure("t1", "p1", "officer_7", {"alert_id": "a1"}) is False
        assert sink.attempts == 2
        records = log.query("t1", event_type=AuditEventType.EMERGENCY_REPORT_SUBMISSION_FAILED)
        assert records[0].priority == EventPriority.HIGH
