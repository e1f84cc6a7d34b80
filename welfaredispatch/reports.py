"""
Report Lifecycle Manager.

Takes a responder's welfare-check outcome report for an alert, validates
it, closes the alert, and records the report.

**State machine per alert:**

    Open -> (responder opens the report form) -> Dispatched
         -> (report submitted) -> Closed [+ optional follow-up]

**Validation, in order, failing fast:**

1. ``outcome`` is one of the seven outcomes -- else ``InvalidOutcome``.
2. Emergency outcomes carry non-empty ``outcome_notes`` -- else
   ``MissingRequiredNotes``.
3. ``check_completed_at`` parses and is not before the alert's
   ``check_initiated_at`` -- else ``InvalidTiming``.
4. ``followup_date`` is optional even when a follow-up is required; history
   renders it as "Date TBD".

**At most one close per alert.**  The alert is closed with a
compare-and-swap before the report is persisted.  A concurrent second
submission loses the swap and gets ``AlreadyResolved``.  If persisting the
report fails, the close is rolled back.

**Emergency reports are never dropped.**  They are retried on save and, if
they still cannot be saved, parked in a human-visible queue and escalated
through the notifier.  A parked report stays parked until it is saved.  An
emergency report filed against an alert that the scanner retracted (the
person checked in, or consent was withdrawn) is still recorded.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from typing import Any, Optional, Protocol, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from welfaredispatch.alerts import AlertStore
from welfaredispatch.audit import AuditEmitter, AuditEventType
from welfaredispatch.config import TenantRegistry
from welfaredispatch.errors import (
    AlreadyResolved,
    InvalidOutcome,
    InvalidTiming,
    MissingRequiredNotes,
    NotFound,
    ProfileConsentMissing,
    UpstreamUnavailable,
    WelfareDispatchError,
)
from welfaredispatch.models import (
    EMERGENCY_OUTCOMES,
    Alert,
    AlertState,
    ClosedReason,
    Outcome,
    ReportSubmission,
    Severity,
    WelfareCheckReport,
    ensure_utc,
    utc_now,
)
from welfaredispatch.notifications import EmergencyNotifier, requires_emergency_notification
from welfaredispatch.profiles import EmergencyProfileStore

logger = logging.getLogger("welfaredispatch.reports")

# Closes made by the scanner rather than by a responder's report.
_RETRACTION_REASONS = frozenset({ClosedReason.CHECKED_IN, ClosedReason.CONSENT_WITHDRAWN})

_TIMESTAMP = TypeAdapter(datetime)


# ---------------------------------------------------------------------------
# Severity classification
# ---------------------------------------------------------------------------

_SEVERITY: dict[Outcome, Severity] = {
    Outcome.SENIOR_OK: Severity.SUCCESS,
    Outcome.SENIOR_OK_NEEDS_FOLLOWUP: Severity.WARNING,
    Outcome.SENIOR_NOT_HOME: Severity.WARNING,
    Outcome.UNABLE_TO_CONTACT: Severity.WARNING,
    Outcome.REFUSED_CHECK: Severity.WARNING,
    Outcome.MEDICAL_EMERGENCY: Severity.ERROR,
    Outcome.NON_MEDICAL_EMERGENCY: Severity.ERROR,
}


def severity(outcome: Outcome) -> Severity:
    """Visual and notification weight of a report outcome."""
    return _SEVERITY[outcome]


def response_time_minutes(check_initiated_at: datetime, check_completed_at: datetime) -> int:
    """Whole minutes between initiation and completion, never negative."""
    seconds = (ensure_utc(check_completed_at) - ensure_utc(check_initiated_at)).total_seconds()
    return max(0, int(seconds // 60))


# ---------------------------------------------------------------------------
# Report store
# ---------------------------------------------------------------------------

class ReportStore(Protocol):
    def save(self, report: WelfareCheckReport) -> WelfareCheckReport: ...

    def get(self, report_id: str) -> WelfareCheckReport: ...

    def list_for_person(self, person_id: str) -> list[WelfareCheckReport]: ...

    def update_followup(
        self,
        report_id: str,
        followup_required: bool,
        followup_date: Optional[date],
        followup_notes: Optional[str],
    ) -> WelfareCheckReport: ...


class InMemoryReportStore:
    """In-process report store with one report per alert."""

    def __init__(self) -> None:
        self._reports: dict[str, WelfareCheckReport] = {}
        self._by_alert: dict[str, str] = {}
        self._lock = threading.Lock()

    def save(self, report: WelfareCheckReport) -> WelfareCheckReport:
        """Raises ``AlreadyResolved`` if the alert already has a report."""
        with self._lock:
            if report.alert_id in self._by_alert:
                raise AlreadyResolved(
                    f"Alert '{report.alert_id}' already has report "
                    f"'{self._by_alert[report.alert_id]}'",
                    alert_id=report.alert_id,
                    report_id=self._by_alert[report.alert_id],
                )
            self._reports[report.id] = report.model_copy(deep=True)
            self._by_alert[report.alert_id] = report.id
            return report.model_copy(deep=True)

    def get(self, report_id: str) -> WelfareCheckReport:
        with self._lock:
            if report_id not in self._reports:
                raise NotFound(f"Unknown report '{report_id}'", report_id=report_id)
            return self._reports[report_id].model_copy(deep=True)

    def list_for_person(self, person_id: str) -> list[WelfareCheckReport]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._reports.values()
                if r.person_id == person_id
            ]

    def update_followup(
        self,
        report_id: str,
        followup_required: bool,
        followup_date: Optional[date],
        followup_notes: Optional[str],
    ) -> WelfareCheckReport:
        with self._lock:
            if report_id not in self._reports:
                raise NotFound(f"Unknown report '{report_id}'", report_id=report_id)
            updated = self._reports[report_id].model_copy(update={
                "followup_required": followup_required,
                "followup_date": followup_date,
                "followup_notes": followup_notes,
            })
            self._reports[report_id] = updated
            return updated.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._reports)


# ---------------------------------------------------------------------------
# Failed emergency submissions
# ---------------------------------------------------------------------------

class FailedSubmission(BaseModel):
    """An emergency report that could not be saved and awaits a human.

    ``report`` is the validated report as first built, so a later retry
    saves exactly what the responder submitted.
    """

    report: WelfareCheckReport
    error: str
    attempts: int = Field(default=1, ge=1)
    failed_at: datetime = Field(default_factory=utc_now)

    @property
    def tenant_id(self) -> str:
        return self.report.tenant_id

    @property
    def person_id(self) -> str:
        return self.report.person_id


# ---------------------------------------------------------------------------
# Lifecycle manager
# ---------------------------------------------------------------------------

class ReportLifecycleManager:
    def __init__(
        self,
        alerts: AlertStore,
        reports: ReportStore,
        profiles: EmergencyProfileStore,
        audit: AuditEmitter,
        notifier: EmergencyNotifier,
        registry: Optional[TenantRegistry] = None,
    ) -> None:
        self._alerts = alerts
        self._reports = reports
        self._profiles = profiles
        self._audit = audit
        self._notifier = notifier
        self._registry = registry or TenantRegistry()
        self._failed: list[FailedSubmission] = []
        self._failed_lock = threading.Lock()

    # -- lifecycle operations --

    def open_report(
        self,
        alert_id: str,
        officer_id: str,
        now: Optional[datetime] = None,
    ) -> Alert:
        """Responder opens the report form: Open -> Dispatched.

        Fixes ``check_initiated_at`` as the dispatch time minus the alert's
        hours since the last check-in.

        Raises:
            NotFound: Unknown alert.
            AlreadyResolved: The alert is already closed.
            InvalidTransition: The alert was already dispatched.
            ProfileConsentMissing: The person's profile lacks consent.
        """
        now = ensure_utc(now) if now is not None else utc_now()
        alert = self._alerts.get(alert_id)
        self._require_consent(alert)

        dispatched = self._alerts.transition(
            alert_id,
            expected={AlertState.OPEN},
            target=AlertState.DISPATCHED,
            dispatched_at=now,
            dispatched_by=officer_id,
            check_initiated_at=now - timedelta(hours=alert.hours_since_check_in),
        )
        self._audit.emit(
            AuditEventType.ALERT_DISPATCHED,
            tenant_id=dispatched.tenant_id,
            person_id=dispatched.person_id,
            actor_id=officer_id,
            details={
                "alert_id": alert_id,
                "urgency_score": dispatched.urgency_score,
                "check_initiated_at": dispatched.check_initiated_at.isoformat(),
            },
            timestamp=now,
        )
        return dispatched

    def submit(
        self,
        submission: Union[ReportSubmission, dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> WelfareCheckReport:
        """Validate a report, close its alert, and persist the report.

        Submitting against an Open alert dispatches it implicitly.  An
        emergency report against an alert the scanner already retracted is
        recorded without touching the alert.

        Raises:
            InvalidOutcome, MissingRequiredNotes, InvalidTiming: Validation
                failures; nothing is persisted.
            NotFound: Unknown alert.
            AlreadyResolved: The alert was closed by another submission or,
                for non-emergency outcomes, by a check-in.
            ProfileConsentMissing: The person's profile lacks consent.
            UpstreamUnavailable: The report could not be saved; the alert is
                reopened and emergency reports are parked for a human.
        """
        if not isinstance(submission, ReportSubmission):
            submission = ReportSubmission.model_validate(submission)
        now = ensure_utc(now) if now is not None else utc_now()

        outcome = self._validate_outcome(submission)
        if outcome in EMERGENCY_OUTCOMES and not submission.outcome_notes.strip():
            raise MissingRequiredNotes(
                f"Outcome notes are required for {outcome.value}.",
                field="outcome_notes",
                outcome=outcome.value,
            )

        alert = self._alerts.get(submission.alert_id)
        if alert.state == AlertState.CLOSED:
            if outcome in EMERGENCY_OUTCOMES and alert.closed_reason in _RETRACTION_REASONS:
                return self._record_after_retraction(submission, outcome, alert, now)
            raise AlreadyResolved(
                f"Alert '{alert.alert_id}' is already closed.",
                alert_id=alert.alert_id,
                closed_reason=alert.closed_reason.value if alert.closed_reason else None,
            )
        initiated = alert.check_initiated_at or (now - timedelta(hours=alert.hours_since_check_in))
        completed = self._validate_timing(submission.check_completed_at, initiated)
        self._require_consent(alert)

        report = self._build_report(submission, outcome, alert, initiated, completed, now)

        closed = self._alerts.transition(
            alert.alert_id,
            expected={AlertState.OPEN, AlertState.DISPATCHED},
            target=AlertState.CLOSED,
            closed_at=now,
            closed_reason=ClosedReason.REPORT_SUBMITTED,
            check_initiated_at=initiated,
            dispatched_at=alert.dispatched_at or now,
            dispatched_by=alert.dispatched_by or submission.officer_id,
        )

        try:
            saved = self._persist(report)
        except UpstreamUnavailable as exc:
            self._alerts.reopen_after_failed_close(alert.alert_id, alert)
            if report.is_emergency:
                self._park_failed(report, exc)
            raise

        self._emit_submitted(saved, now)
        self._emit_closed(closed, saved.officer_id, now)
        if requires_emergency_notification(saved.outcome, saved.ems_called):
            self._notifier.notify_emergency(saved)

        logger.info(
            "Report %s closed alert %s with outcome %s",
            saved.id, saved.alert_id, saved.outcome.value,
        )
        return saved

    def update_followup(
        self,
        report_id: str,
        actor_id: str,
        followup_required: bool,
        followup_date: Optional[date] = None,
        followup_notes: Optional[str] = None,
    ) -> WelfareCheckReport:
        """Change the follow-up fields, the only mutable part of a report."""
        report = self._reports.update_followup(
            report_id, followup_required, followup_date, followup_notes
        )
        self._audit.emit(
            AuditEventType.REPORT_FOLLOWUP_UPDATED,
            tenant_id=report.tenant_id,
            person_id=report.person_id,
            actor_id=actor_id,
            details={
                "report_id": report_id,
                "followup_required": followup_required,
                "followup_date": followup_date.isoformat() if followup_date else None,
            },
        )
        return report

    def get_report(self, report_id: str) -> WelfareCheckReport:
        return self._reports.get(report_id)

    def get_report_history(
        self,
        person_id: str,
        limit: Optional[int] = None,
    ) -> list[WelfareCheckReport]:
        """A person's reports, newest first.

        Without ``limit`` the owning tenant's ``report_history_limit``
        applies.
        """
        reports = sorted(
            self._reports.list_for_person(person_id),
            key=lambda r: (r.check_completed_at, r.created_at),
            reverse=True,
        )
        if not reports:
            return []
        if limit is None:
            limit = self._registry.get_or_default(reports[0].tenant_id).report_history_limit
        return reports[:max(0, limit)]

    # -- failed emergency submissions --

    def pending_failed_submissions(self, tenant_id: str) -> list[FailedSubmission]:
        with self._failed_lock:
            return [f.model_copy(deep=True) for f in self._failed if f.tenant_id == tenant_id]

    def retry_failed_submissions(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> list[WelfareCheckReport]:
        """Save the tenant's parked emergency reports; returns the ones saved.

        Each report is taken off the queue only while it is being retried.
        A report that still cannot be saved goes back on the queue and is
        escalated again.  A report whose alert was retracted meanwhile is
        saved anyway.
        """
        now = ensure_utc(now) if now is not None else utc_now()
        saved = []
        for failed in self.pending_failed_submissions(tenant_id):
            if not self._unpark(failed.report.id):
                continue
            try:
                saved.append(self._save_parked(failed.report, now))
            except WelfareDispatchError as exc:
                self._park_failed(failed.report, exc, attempts=failed.attempts + 1)
        return saved

    # -- helpers --

    def _validate_outcome(self, submission: ReportSubmission) -> Outcome:
        try:
            return Outcome(submission.outcome)
        except ValueError:
            raise InvalidOutcome(
                f"Unknown outcome '{submission.outcome}'. "
                f"Expected one of: {[o.value for o in Outcome]}",
                field="outcome",
                value=submission.outcome,
            ) from None

    def _validate_timing(self, value: Any, initiated: datetime) -> datetime:
        completed = _parse_timestamp(value)
        if completed is None:
            raise InvalidTiming(
                f"check_completed_at is not a valid timestamp: {value!r}",
                field="check_completed_at",
            )
        if completed < initiated:
            raise InvalidTiming(
                f"check_completed_at ({completed.isoformat()}) is earlier than "
                f"check_initiated_at ({initiated.isoformat()}).",
                field="check_completed_at",
                check_initiated_at=initiated.isoformat(),
            )
        return completed

    def _require_consent(self, alert: Alert) -> None:
        if self._profiles.get_dispatchable(alert.person_id) is None:
            raise ProfileConsentMissing(
                f"Person '{alert.person_id}' has no consented emergency profile; "
                "cannot dispatch.",
                person_id=alert.person_id,
            )

    def _build_report(
        self,
        submission: ReportSubmission,
        outcome: Outcome,
        alert: Alert,
        initiated: datetime,
        completed: datetime,
        now: datetime,
    ) -> WelfareCheckReport:
        emergency = outcome in EMERGENCY_OUTCOMES
        return WelfareCheckReport(
            alert_id=alert.alert_id,
            tenant_id=alert.tenant_id,
            person_id=alert.person_id,
            officer_id=submission.officer_id,
            officer_name=submission.officer_name,
            check_initiated_at=initiated,
            check_completed_at=completed,
            outcome=outcome,
            outcome_notes=submission.outcome_notes.strip(),
            severity=severity(outcome),
            ems_called=submission.ems_called,
            family_notified=submission.family_notified,
            actions_taken=submission.actions_taken,
            transported_to=submission.transported_to if emergency else None,
            transport_reason=submission.transport_reason if emergency else None,
            followup_required=submission.followup_required,
            followup_date=submission.followup_date,
            followup_notes=submission.followup_notes,
            response_time_minutes=response_time_minutes(initiated, completed),
            created_at=now,
        )

    def _record_after_retraction(
        self,
        submission: ReportSubmission,
        outcome: Outcome,
        alert: Alert,
        now: datetime,
    ) -> WelfareCheckReport:
        """Record an emergency found on site after the scanner closed the alert.

        Consent gates dispatch, not the record of what the responder found,
        so it is not checked here.  The alert stays closed.
        """
        initiated = alert.check_initiated_at or alert.last_check_in_at
        completed = self._validate_timing(submission.check_completed_at, initiated)
        report = self._build_report(submission, outcome, alert, initiated, completed, now)
        try:
            saved = self._persist(report)
        except UpstreamUnavailable as exc:
            self._park_failed(report, exc)
            raise

        logger.warning(
            "Emergency report %s recorded against alert %s already closed as %s",
            saved.id, alert.alert_id, alert.closed_reason.value,
        )
        self._emit_submitted(saved, now, alert_closed_reason=alert.closed_reason.value)
        self._notifier.notify_emergency(saved)
        return saved

    def _save_parked(self, report: WelfareCheckReport, now: datetime) -> WelfareCheckReport:
        alert = self._alerts.get(report.alert_id)
        closed = None
        if alert.is_active:
            try:
                closed = self._alerts.transition(
                    alert.alert_id,
                    expected={AlertState.OPEN, AlertState.DISPATCHED},
                    target=AlertState.CLOSED,
                    closed_at=now,
                    closed_reason=ClosedReason.REPORT_SUBMITTED,
                    check_initiated_at=report.check_initiated_at,
                    dispatched_at=alert.dispatched_at or now,
                    dispatched_by=alert.dispatched_by or report.officer_id,
                )
            except AlreadyResolved:
                # Retracted between the read and the swap; save the report anyway.
                closed = None

        try:
            saved = self._persist(report)
        except WelfareDispatchError:
            if closed is not None:
                self._alerts.reopen_after_failed_close(alert.alert_id, alert)
            raise

        self._emit_submitted(saved, now, resubmitted=True)
        if closed is not None:
            self._emit_closed(closed, saved.officer_id, now)
        self._notifier.notify_emergency(saved)
        logger.info("Parked emergency report %s saved for alert %s", saved.id, saved.alert_id)
        return saved

    def _emit_submitted(self, report: WelfareCheckReport, now: datetime, **extra: Any) -> None:
        self._audit.emit(
            AuditEventType.REPORT_SUBMITTED,
            tenant_id=report.tenant_id,
            person_id=report.person_id,
            actor_id=report.officer_id,
            details={
                "report_id": report.id,
                "alert_id": report.alert_id,
                "outcome": report.outcome.value,
                "severity": report.severity.value,
                "response_time_minutes": report.response_time_minutes,
                "followup_required": report.followup_required,
                **extra,
            },
            timestamp=now,
        )

    def _emit_closed(self, alert: Alert, actor_id: str, now: datetime) -> None:
        self._audit.emit(
            AuditEventType.ALERT_CLOSED,
            tenant_id=alert.tenant_id,
            person_id=alert.person_id,
            actor_id=actor_id,
            details={"alert_id": alert.alert_id, "reason": ClosedReason.REPORT_SUBMITTED.value},
            timestamp=now,
        )

    def _persist(self, report: WelfareCheckReport) -> WelfareCheckReport:
        attempts = 1
        if report.is_emergency:
            attempts += self._registry.get_or_default(report.tenant_id).emergency_submit_retries
        attempt = 1
        while True:
            try:
                return self._reports.save(report)
            except UpstreamUnavailable:
                logger.warning(
                    "Saving report %s failed (attempt %d/%d)",
                    report.id, attempt, attempts,
                )
                if attempt >= attempts:
                    raise
                attempt += 1

    def _unpark(self, report_id: str) -> bool:
        with self._failed_lock:
            for idx, failed in enumerate(self._failed):
                if failed.report.id == report_id:
                    del self._failed[idx]
                    return True
        return False

    def _park_failed(
        self,
        report: WelfareCheckReport,
        error: WelfareDispatchError,
        attempts: int = 1,
    ) -> None:
        failed = FailedSubmission(report=report, error=str(error), attempts=attempts)
        with self._failed_lock:
            self._failed.append(failed)
        logger.error(
            "Emergency report %s for alert %s could not be saved (%s); parked for human review",
            report.id, report.alert_id, error.kind,
        )
        self._notifier.notify_submission_failure(
            tenant_id=report.tenant_id,
            person_id=report.person_id,
            actor_id=report.officer_id,
            details={
                "alert_id": report.alert_id,
                "report_id": report.id,
                "outcome": report.outcome.value,
                "error": str(error),
                "error_kind": error.kind,
                "attempts": attempts,
            },
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        value = value.strip()
    if value is None or value == "":
        return None
    try:
        return ensure_utc(_TIMESTAMP.validate_python(value))
    except ValidationError:
        return None
