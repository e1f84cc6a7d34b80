"""
Tests for welfaredispatch.engine -- the engine facade end to end.

Covers: scan-to-report flow, critical-tier scoring, retraction on check-in,
consent gating across every surface, check-in status board, welfare-check
dispatch packet, emergency reports after retraction, and rendered report
history with the tenant limit.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from welfaredispatch.audit import AuditEventType
from welfaredispatch.collaborators import InMemoryCheckInLedger, InMemoryPersonDirectory
from welfaredispatch.config import TenantPolicy, TenantRegistry
from welfaredispatch.engine import WelfareCheckEngine
from welfaredispatch.errors import AlreadyResolved, NotFound, ProfileConsentMissing
from welfaredispatch.models import (
    AlertState,
    CheckInState,
    ClosedReason,
    EmergencyContact,
    Person,
    ResponsePriority,
    Role,
    UrgencyBand,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _make_engine() -> WelfareCheckEngine:
    return WelfareCheckEngine(InMemoryCheckInLedger(), InMemoryPersonDirectory())


def _enroll(
    engine: WelfareCheckEngine,
    person_id: str,
    name: str,
    hours_ago: float | None = None,
    tenant_id: str = "t1",
    consent: bool = True,
    **profile_fields,
) -> None:
    engine.directory.add(Person(
        person_id=person_id,
        tenant_id=tenant_id,
        full_name=name,
        address=f"{len(name)} Oak Ave",
        emergency_contacts=[EmergencyContact(name=f"{name} Jr.", phone="555-0142", is_primary=True)],
    ))
    fields = {"consent_obtained": consent}
    fields.update(profile_fields)
    if consent:
        engine.upsert_emergency_profile(tenant_id, person_id, fields, actor_id="caregiver_1")
    else:
        with pytest.raises(ProfileConsentMissing):
            engine.upsert_emergency_profile(tenant_id, person_id, fields, actor_id="caregiver_1")
    if hours_ago is not None:
        engine.ledger.record(person_id, NOW - timedelta(hours=hours_ago))


# ---------------------------------------------------------------------------
# 1. Scan to report
# ---------------------------------------------------------------------------

class TestScanToReport:
    def test_full_flow(self):
        engine = _make_engine()
        _enroll(engine, "p1", "Ada Moss", hours_ago=3)
        _enroll(engine, "p2", "Ben Cole", hours_ago=2, response_priority="critical")

        engine.scan_tenant("t1", now=NOW)
        feed = engine.get_open_alerts("t1")
        assert [v.person_id for v in feed] == ["p2", "p1"]
        assert feed[0].urgency_score == 100
        assert feed[1].urgency_score == 50

        engine.open_report(feed[0].alert_id, "officer_7", now=NOW)
        report = engine.submit_welfare_check_report({
            "alert_id": feed[0].alert_id,
            "officer_id": "officer_7",
            "officer_name": "Officer Reyes",
            "outcome": "senior_ok",
            "check_completed_at": NOW,
        }, now=NOW)
        assert report.response_time_minutes == 120

        assert [v.person_id for v in engine.get_open_alerts("t1")] == ["p1"]
        rows = engine.render_report_history("p2")
        assert rows[0]["response_time"] == "2h"
        assert rows[0]["severity"] == "success"

    def test_critical_tier_scenario(self):
        engine = _make_engine()
        _enroll(
            engine, "p1", "Cora Diaz", hours_ago=2 + 10 / 60,
            response_priority="critical", escalation_delay_hours=2,
        )
        engine.scan_tenant("t1", now=NOW)
        view = engine.get_open_alerts("t1")[0]
        assert view.urgency_score == 108
        assert view.band == UrgencyBand.CRITICAL
        assert view.response_priority == ResponsePriority.CRITICAL

    def test_check_in_retracts_and_blocks_report(self):
        engine = _make_engine()
        _enroll(engine, "p1", "Ada Moss", hours_ago=9)
        engine.scan_tenant("t1", now=NOW)
        alert_id = engine.get_open_alerts("t1")[0].alert_id
        engine.open_report(alert_id, "officer_7", now=NOW)

        engine.ledger.record("p1", NOW + timedelta(minutes=3))
        engine.scan_tenant("t1", now=NOW + timedelta(minutes=5))
        assert engine.get_open_alerts("t1") == []
        assert engine.alerts.get(alert_id).state == AlertState.CLOSED

        with pytest.raises(AlreadyResolved):
            engine.submit_welfare_check_report({
                "alert_id": alert_id,
                "officer_id": "officer_7",
                "outcome": "senior_ok",
                "check_completed_at": NOW + timedelta(minutes=6),
            })

    def test_emergency_report_survives_check_in_retraction(self):
        engine = _make_engine()
        _enroll(engine, "p1", "Ada Moss", hours_ago=9)
        engine.scan_tenant("t1", now=NOW)
        alert_id = engine.get_open_alerts("t1")[0].alert_id
        engine.open_report(alert_id, "officer_7", now=NOW)

        engine.ledger.record("p1", NOW + timedelta(minutes=3))
        engine.scan_tenant("t1", now=NOW + timedelta(minutes=5))

        report = engine.submit_welfare_check_report({
            "alert_id": alert_id,
            "officer_id": "officer_7",
            "outcome": "medical_emergency",
            "outcome_notes": "Checked in by phone, then collapsed at the door.",
            "ems_called": True,
            "check_completed_at": NOW + timedelta(minutes=6),
        }, now=NOW + timedelta(minutes=7))

        assert [r.id for r in engine.get_report_history("p1")] == [report.id]
        alert = engine.alerts.get(alert_id)
        assert alert.state == AlertState.CLOSED
        assert alert.closed_reason == ClosedReason.CHECKED_IN
        assert engine.get_open_alerts("t1") == []
        notified = [e.event_type for e in engine.notification_sink.for_tenant("t1")]
        assert AuditEventType.EMERGENCY_REPORTED in notified

    def test_history_limit_from_registry(self):
        registry = TenantRegistry()
        registry.register(TenantPolicy(
            tenant_id="t1", tenant_name="Precinct 1", report_history_limit=1,
        ))
        engine = WelfareCheckEngine(
            InMemoryCheckInLedger(), InMemoryPersonDirectory(), registry=registry,
        )
        _enroll(engine, "p1", "Ada Moss")
        for hours_ago in (5, 3):
            engine.ledger.record("p1", NOW - timedelta(hours=hours_ago))
            engine.scan_tenant("t1", now=NOW)
            alert_id = engine.get_open_alerts("t1")[0].alert_id
            engine.submit_welfare_check_report({
                "alert_id": alert_id,
                "officer_id": "officer_7",
                "outcome": "senior_ok",
                "check_completed_at": NOW,
            }, now=NOW)
        assert len(engine.render_report_history("p1")) == 1
        assert len(engine.render_report_history("p1", limit=10)) == 2

    def test_audit_trail(self):
        engine = _make_engine()
        _enroll(engine, "p1", "Ada Moss", hours_ago=3)
        engine.scan_tenant("t1", now=NOW)
        alert_id = engine.get_open_alerts("t1")[0].alert_id
        engine.submit_welfare_check_report({
            "alert_id": alert_id,
            "officer_id": "officer_7",
            "outcome": "unable_to_contact",
            "check_completed_at": NOW,
        }, now=NOW)
        types = [r.event_type for r in engine.audit_sink.query("t1", person_id="p1")]
        assert types == [
            AuditEventType.PROFILE_UPSERTED,
            AuditEventType.ALERT_OPENED,
            AuditEventType.REPORT_SUBMITTED,
            AuditEventType.ALERT_CLOSED,
        ]


# ---------------------------------------------------------------------------
# 2. Consent gate
# ---------------------------------------------------------------------------

class TestConsentGate:
    def test_unconsented_person_never_surfaces(self):
        engine = _make_engine()
        _enroll(engine, "p1", "Ada Moss", hours_ago=30, consent=False, bed_bound=True)
        engine.scan_tenant("t1", now=NOW)
        assert engine.get_open_alerts("t1") == []
        assert engine.get_check_in_statuses("t1", now=NOW) == []
        info = engine.get_welfare_check_info("p1", now=NOW)
        assert info.profile is None
        assert info.mobility_status == "Unknown"
        # The draft was still stored for the editor.
        assert engine.get_emergency_profile("p1").bed_bound is True

    def test_profile_view_for_family(self):
        engine = _make_engine()
        _enroll(engine, "p1", "Ada Moss")
        assert not engine.view_emergency_profile("p1", Role.FAMILY).editable


# ---------------------------------------------------------------------------
# 3. Monitoring views
# ---------------------------------------------------------------------------

class TestMonitoringViews:
    def test_check_in_statuses(self):
        engine = _make_engine()
        _enroll(engine, "p1", "Dan Ok", hours_ago=1)
        _enroll(engine, "p2", "Bea Overdue", hours_ago=5)
        _enroll(engine, "p3", "Al Critical", hours_ago=3, response_priority="critical")
        _enroll(engine, "p4", "Cy Pending")
        _enroll(engine, "p5", "Eve Elsewhere", hours_ago=1, tenant_id="t2")

        rows = engine.get_check_in_statuses("t1", now=NOW)
        assert [r.person_name for r in rows] == ["Al Critical", "Bea Overdue", "Cy Pending", "Dan Ok"]
        by_id = {r.person_id: r for r in rows}
        assert by_id["p1"].status == CheckInState.OK
        assert by_id["p2"].status == CheckInState.OVERDUE
        assert by_id["p3"].status == CheckInState.CRITICAL
        assert by_id["p4"].status == CheckInState.PENDING
        assert by_id["p4"].hours_since_check_in is None
        assert [r.person_id for r in rows if r.requires_action] == ["p3", "p2"]

    def test_welfare_check_info(self):
        engine = _make_engine()
        _enroll(
            engine, "p1", "Ada Moss", hours_ago=4,
            walker_required=True, oxygen_dependent=True, cognitive_impairment=True,
            response_priority="high", door_code="4411",
        )
        info = engine.get_welfare_check_info("p1", now=NOW)
        assert info.profile.door_code == "4411"
        assert info.mobility_status == "Walker"
        assert info.special_needs == "Oxygen, Cognitive impairment"
        assert info.response_priority == ResponsePriority.HIGH
        assert info.hours_since_check_in == pytest.approx(4.0)
        assert info.emergency_contact.name == "Ada Moss Jr."

    def test_welfare_check_info_unknown_person(self):
        with pytest.raises(NotFound):
            _make_engine().get_welfare_check_info("ghost", now=NOW)
