"""
Engine facade -- the boundary consumed by a dispatch console.

Wires the profile store, scanner, alert feed, and report lifecycle manager
around the external collaborators (check-in ledger, person directory,
audit sink, notification sink) and exposes the engine's queries and
commands in one place.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

from welfaredispatch.alerts import AlertRankingFeed, AlertStore
from welfaredispatch.audit import (
    AuditEmitter,
    AuditSink,
    InMemoryAuditLog,
    InMemoryNotificationSink,
    NotificationSink,
)
from welfaredispatch.collaborators import CheckInLedger, PersonDirectory
from welfaredispatch.config import TenantRegistry
from welfaredispatch.errors import NotFound
from welfaredispatch.history import render_history
from welfaredispatch.models import (
    Alert,
    AlertView,
    CheckInStatus,
    CheckInState,
    EmergencyProfile,
    ReportSubmission,
    Role,
    WelfareCheckInfo,
    WelfareCheckReport,
    ensure_utc,
    utc_now,
)
from welfaredispatch.notifications import EmergencyNotifier
from welfaredispatch.profiles import EmergencyProfileStore, ProfileView
from welfaredispatch.reports import InMemoryReportStore, ReportLifecycleManager, ReportStore
from welfaredispatch.scanner import EscalationScanner, ScanResult, ScanSupervisor
from welfaredispatch.urgency import check_in_state, hours_since, resolve_escalation_delay


class WelfareCheckEngine:
    def __init__(
        self,
        ledger: CheckInLedger,
        directory: PersonDirectory,
        audit_sink: Optional[AuditSink] = None,
        notification_sink: Optional[NotificationSink] = None,
        registry: Optional[TenantRegistry] = None,
        report_store: Optional[ReportStore] = None,
    ) -> None:
        self.ledger = ledger
        self.directory = directory
        self.audit_sink = audit_sink if audit_sink is not None else InMemoryAuditLog()
        self.notification_sink = (
            notification_sink if notification_sink is not None else InMemoryNotificationSink()
        )
        self.registry = registry or TenantRegistry()

        audit = AuditEmitter(self.audit_sink)
        self.profiles = EmergencyProfileStore(audit)
        self.alerts = AlertStore()
        self.reports = report_store if report_store is not None else InMemoryReportStore()
        self.notifier = EmergencyNotifier(self.notification_sink, audit)
        self.scanner = EscalationScanner(
            self.profiles, self.ledger, self.alerts, audit, self.registry
        )
        self.feed = AlertRankingFeed(self.alerts, self.profiles, self.directory)
        self.lifecycle = ReportLifecycleManager(
            self.alerts, self.reports, self.profiles, audit, self.notifier, self.registry
        )

    # -- scanning --

    def scan_tenant(self, tenant_id: str, now: Optional[datetime] = None) -> ScanResult:
        return self.scanner.scan_tenant(tenant_id, now)

    def supervisor(self) -> ScanSupervisor:
        return ScanSupervisor(self.scanner, self.registry)

    # -- alerts --

    def get_open_alerts(self, tenant_id: str) -> list[AlertView]:
        return self.feed.get_open_alerts(tenant_id)

    # -- profiles --

    def get_emergency_profile(self, person_id: str) -> EmergencyProfile:
        return self.profiles.get(person_id)

    def upsert_emergency_profile(
        self,
        tenant_id: str,
        person_id: str,
        fields: dict[str, Any],
        actor_id: str = "SYSTEM",
    ) -> EmergencyProfile:
        return self.profiles.upsert(tenant_id, person_id, fields, actor_id)

    def view_emergency_profile(self, person_id: str, role: Role) -> ProfileView:
        return self.profiles.view(person_id, role)

    # -- reports --

    def open_report(
        self,
        alert_id: str,
        officer_id: str,
        now: Optional[datetime] = None,
    ) -> Alert:
        return self.lifecycle.open_report(alert_id, officer_id, now)

    def submit_welfare_check_report(
        self,
        submission: Union[ReportSubmission, dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> WelfareCheckReport:
        return self.lifecycle.submit(submission, now)

    def get_report_history(
        self,
        person_id: str,
        limit: Optional[int] = None,
    ) -> list[WelfareCheckReport]:
        return self.lifecycle.get_report_history(person_id, limit)

    def render_report_history(
        self,
        person_id: str,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        return render_history(self.get_report_history(person_id, limit))

    # -- monitoring views --

    def get_check_in_statuses(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> list[CheckInStatus]:
        """Status board of every consented person in the tenant, by name."""
        now = ensure_utc(now) if now is not None else utc_now()
        policy = self.registry.get_or_default(tenant_id)
        rows = []
        for profile in self.profiles.list_for_tenant(tenant_id):
            if not profile.consent_obtained:
                continue
            try:
                person = self.directory.get(profile.person_id)
            except NotFound:
                continue
            last = self.ledger.last_check_in_at(profile.person_id)
            hours = hours_since(last, now) if last is not None else None
            delay = resolve_escalation_delay(profile, policy.escalation_delay_defaults)
            status = check_in_state(hours, delay)
            rows.append(CheckInStatus(
                person_id=profile.person_id,
                person_name=person.full_name,
                address=person.address,
                last_check_in_at=last,
                hours_since_check_in=hours,
                status=status,
                response_priority=profile.response_priority,
                requires_action=status in (CheckInState.CRITICAL, CheckInState.OVERDUE),
            ))
        return sorted(rows, key=lambda r: r.person_name)

    def get_welfare_check_info(
        self,
        person_id: str,
        now: Optional[datetime] = None,
    ) -> WelfareCheckInfo:
        """Dispatch packet for one person.

        The emergency profile is included only when consent is on record.

        Raises:
            NotFound: Unknown person.
        """
        now = ensure_utc(now) if now is not None else utc_now()
        person = self.directory.get(person_id)
        profile = self.profiles.get_dispatchable(person_id)
        last = self.ledger.last_check_in_at(person_id)
        info = WelfareCheckInfo(
            person=person,
            profile=profile,
            last_check_in_at=last,
            hours_since_check_in=hours_since(last, now) if last is not None else None,
            emergency_contact=person.primary_contact(),
        )
        if profile is not None:
            info.mobility_status = profile.mobility_status
            info.special_needs = ", ".join(profile.special_needs) or None
            info.response_priority = profile.response_priority
        return info
