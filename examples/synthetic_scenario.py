"""
Synthetic Scenario: Missed Check-In to Welfare-Check Report
===========================================================

This script walks through the welfare-check engine end to end using
entirely synthetic people and addresses.

The scenario simulates a precinct running an "Are You OK?" program: seniors
check in by phone every day, and a responder is dispatched when someone
goes quiet for longer than their response contract allows.

Steps demonstrated:
  1. Load tenant policy from YAML
  2. Enroll synthetic people and their emergency profiles
  3. Record check-ins and run an escalation scan
  4. Read the ranked alert feed and the dispatch packet
  5. Dispatch, then submit an emergency welfare-check report
  6. Watch a check-in retract another alert
  7. Render report history and the audit trail

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from welfaredispatch.collaborators import InMemoryCheckInLedger, InMemoryPersonDirectory
from welfaredispatch.config import TenantPolicy, TenantRegistry, load_tenant_policies_from_yaml
from welfaredispatch.engine import WelfareCheckEngine
from welfaredispatch.errors import ProfileConsentMissing
from welfaredispatch.models import EmergencyContact, Person


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _banner("Welfare-Check Engine Synthetic Scenario")
    print("All people, addresses and phone numbers below are synthetic.\n")

    now = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    # ------------------------------------------------------------------
    # Step 1: Load tenant policy
    # ------------------------------------------------------------------
    _banner("Step 1: Load Tenant Policy")

    registry = TenantRegistry()
    sample_yaml = Path(__file__).parent / "tenants.yaml"
    if sample_yaml.exists():
        for policy in load_tenant_policies_from_yaml(sample_yaml):
            registry.register(policy)
    else:
        registry.register(TenantPolicy(tenant_id="precinct_3", tenant_name="Precinct 3"))
    policy = registry.get("precinct_3")
    print(f"Loaded policy: {policy.tenant_name} (tenant_id: {policy.tenant_id})")
    print(f"Tenants in registry: {registry.list_tenants()}")

    engine = WelfareCheckEngine(
        InMemoryCheckInLedger(),
        InMemoryPersonDirectory(),
        registry=registry,
    )

    # ------------------------------------------------------------------
    # Step 2: Enroll synthetic people
    # ------------------------------------------------------------------
    _banner("Step 2: Enroll Synthetic People")

    people = [
        ("p_ada", "Ada Synthetic", "12 Maple Ct, Apt 3B", {
            "response_priority": "critical",
            "escalation_delay_hours": 2,
            "wheelchair_bound": True,
            "oxygen_dependent": True,
            "oxygen_tank_location": "Bedroom closet",
            "door_code": "4411",
            "building_type": "apartment",
            "floor_number": "3",
            "elevator_required": True,
        }),
        ("p_ben", "Ben Synthetic", "88 Birch Rd", {
            "response_priority": "standard",
            "pets_in_home": "Small dog, friendly",
            "key_location": "Lockbox by side door",
        }),
        ("p_cy", "Cy Synthetic", "5 Elm St", {
            "response_priority": "high",
            "hearing_impaired": True,
        }),
    ]
    for person_id, name, address, fields in people:
        engine.directory.add(Person(
            person_id=person_id,
            tenant_id=policy.tenant_id,
            full_name=name,
            address=address,
            emergency_contacts=[
                EmergencyContact(name=f"{name} (daughter)", relationship="daughter",
                                 phone="555-0100", is_primary=True),
            ],
        ))
        profile = engine.upsert_emergency_profile(
            policy.tenant_id, person_id,
            {"consent_obtained": True, "consent_given_by": "self", **fields},
            actor_id="caregiver_synthetic",
        )
        print(f"Enrolled {name}: priority={profile.response_priority.value}, "
              f"mobility={profile.mobility_status}")

    # A profile drafted without consent is stored but never dispatched.
    engine.directory.add(Person(person_id="p_dee", tenant_id=policy.tenant_id,
                                full_name="Dee Synthetic", address="9 Pine Ln"))
    try:
        engine.upsert_emergency_profile(policy.tenant_id, "p_dee", {"bed_bound": True})
    except ProfileConsentMissing as exc:
        print(f"\nDee Synthetic: {exc.kind} -- {exc.message}")

    # ------------------------------------------------------------------
    # Step 3: Check-ins and scan
    # ------------------------------------------------------------------
    _banner("Step 3: Check-Ins and Escalation Scan")

    engine.ledger.record("p_ada", now - timedelta(hours=2, minutes=10))
    engine.ledger.record("p_ben", now - timedelta(hours=5))
    engine.ledger.record("p_cy", now - timedelta(hours=1))
    engine.ledger.record("p_dee", now - timedelta(hours=30))

    result = engine.scan_tenant(policy.tenant_id, now=now)
    print(f"Scan result: {result}")

    for status in engine.get_check_in_statuses(policy.tenant_id, now=now):
        print(f"  {status.person_name:<16} {status.status.value:<9} "
              f"action={status.requires_action}")

    # ------------------------------------------------------------------
    # Step 4: Alert feed and dispatch packet
    # ------------------------------------------------------------------
    _banner("Step 4: Ranked Alert Feed")

    feed = engine.get_open_alerts(policy.tenant_id)
    for view in feed:
        print(f"  [{view.band.value:>8}] {view.urgency_score:>4}  {view.person_name:<16} "
              f"{view.hours_since_check_in:.2f}h  {view.mobility_status}  "
              f"{view.special_needs or ''}")

    top = feed[0]
    info = engine.get_welfare_check_info(top.person_id, now=now)
    print(f"\nDispatch packet for {info.person.full_name}:")
    print(json.dumps(info.profile.section("location_access"), indent=2, default=str))

    # ------------------------------------------------------------------
    # Step 5: Dispatch and report
    # ------------------------------------------------------------------
    _banner("Step 5: Dispatch and Emergency Report")

    alert = engine.open_report(top.alert_id, "officer_synthetic_7", now=now)
    print(f"Alert {alert.alert_id} -> {alert.state.value}; "
          f"check initiated at {alert.check_initiated_at.isoformat()}")

    report = engine.submit_welfare_check_report({
        "alert_id": top.alert_id,
        "officer_id": "officer_synthetic_7",
        "officer_name": "Officer Synthetic",
        "outcome": "medical_emergency",
        "outcome_notes": "(Synthetic) Found short of breath; oxygen tank empty.",
        "check_completed_at": now + timedelta(minutes=25),
        "ems_called": True,
        "family_notified": True,
        "actions_taken": ["knocked", "entered with door code", "called EMS"],
        "transported_to": "County General (synthetic)",
        "followup_required": True,
    }, now=now + timedelta(minutes=26))
    print(f"Report {report.id}: outcome={report.outcome.value} "
          f"severity={report.severity.value} response={report.response_time_minutes} min")
    print(f"Notifications sent: {len(engine.notification_sink.for_tenant(policy.tenant_id))}")

    # ------------------------------------------------------------------
    # Step 6: Check-in retracts an alert
    # ------------------------------------------------------------------
    _banner("Step 6: Check-In Retracts an Alert")

    engine.ledger.record("p_ben", now + timedelta(minutes=30))
    result = engine.scan_tenant(policy.tenant_id, now=now + timedelta(minutes=35))
    print(f"Scan result: {result}")
    print(f"Open alerts left: {[v.person_name for v in engine.get_open_alerts(policy.tenant_id)]}")

    # ------------------------------------------------------------------
    # Step 7: History and audit trail
    # ------------------------------------------------------------------
    _banner("Step 7: Report History and Audit Trail")

    print(json.dumps(engine.render_report_history("p_ada"), indent=2))
    print()
    for record in engine.audit_sink.query(policy.tenant_id):
        print(f"  {record.timestamp.isoformat()}  {record.event_type.value:<36} "
              f"{record.person_id:<8} {record.priority.value}")

    _banner("Scenario Complete")


if __name__ == "__main__":
    main()
