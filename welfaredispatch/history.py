"""
Report history rendering.

Builds the rows a history display shows for a person's past welfare checks:
outcome, severity, a human-readable response time, and the follow-up line.
A follow-up without a date is shown as "Date TBD" rather than hidden.
"""

from __future__ import annotations

from typing import Any, Iterable

from welfaredispatch.models import WelfareCheckReport

FOLLOWUP_DATE_TBD = "Date TBD"

_OUTCOME_LABELS = {
    "senior_ok": "Senior OK",
    "senior_ok_needs_followup": "Senior OK - Needs Follow-up",
    "senior_not_home": "Senior Not Home",
    "medical_emergency": "Medical Emergency",
    "non_medical_emergency": "Non-Medical Emergency",
    "unable_to_contact": "Unable to Contact",
    "refused_check": "Refused Check",
}


def format_response_time(minutes: float) -> str:
    """Render a response duration.

    Under a minute is "< 1 min", under an hour is whole minutes ("45 min"),
    otherwise "1h 35m" with the minutes dropped when zero ("2h").
    """
    if minutes < 1:
        return "< 1 min"
    whole = int(minutes)
    if whole < 60:
        return f"{whole} min"
    hours, mins = divmod(whole, 60)
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}m"


def followup_label(report: WelfareCheckReport) -> str | None:
    if not report.followup_required:
        return None
    if report.followup_date is None:
        return FOLLOWUP_DATE_TBD
    return report.followup_date.isoformat()


def history_entry(report: WelfareCheckReport) -> dict[str, Any]:
    """One history row for a report."""
    return {
        "report_id": report.id,
        "check_completed_at": report.check_completed_at.isoformat(),
        "officer_name": report.officer_name or report.officer_id,
        "outcome": report.outcome.value,
        "outcome_label": _OUTCOME_LABELS[report.outcome.value],
        "severity": report.severity.value,
        "response_time": format_response_time(report.response_time_minutes),
        "ems_called": report.ems_called,
        "family_notified": report.family_notified,
        "actions_taken": list(report.actions_taken),
        "transported_to": report.transported_to,
        "followup": followup_label(report),
        "followup_notes": report.followup_notes,
        "outcome_notes": report.outcome_notes,
    }


def render_history(reports: Iterable[WelfareCheckReport]) -> list[dict[str, Any]]:
    """History rows in the order given (callers pass newest first)."""
    return [history_entry(r) for r in reports]
