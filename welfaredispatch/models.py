"""
Core data models for the welfare-check engine.

``EmergencyProfile`` is the per-person emergency-response record carried by
every alert.  ``Alert`` is the live, mutable record of an overdue person
awaiting a responder.  ``WelfareCheckReport`` is the immutable record of a
completed in-person check and its outcome.

Profile fields are declared explicitly and grouped in ``PROFILE_SECTIONS``
so that rendering and summaries never look fields up by computed name.
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ResponsePriority(str, enum.Enum):
    """Per-person response contract tier.

    The tier sets the expected response window (the urgency denominator),
    not the band an alert is displayed in.
    """

    STANDARD = "standard"
    HIGH = "high"
    CRITICAL = "critical"


DEFAULT_ESCALATION_DELAY_HOURS: dict[ResponsePriority, float] = {
    ResponsePriority.STANDARD: 6.0,
    ResponsePriority.HIGH: 4.0,
    ResponsePriority.CRITICAL: 2.0,
}


class UrgencyBand(str, enum.Enum):
    """Display band derived from the urgency score alone."""

    NORMAL = "normal"
    ELEVATED = "elevated"
    HIGH = "high"
    CRITICAL = "critical"


class AlertState(str, enum.Enum):
    OPEN = "Open"
    DISPATCHED = "Dispatched"
    CLOSED = "Closed"


class ClosedReason(str, enum.Enum):
    REPORT_SUBMITTED = "report_submitted"
    CHECKED_IN = "checked_in"
    CONSENT_WITHDRAWN = "consent_withdrawn"


class Outcome(str, enum.Enum):
    """Result of an in-person welfare check."""

    SENIOR_OK = "senior_ok"
    SENIOR_OK_NEEDS_FOLLOWUP = "senior_ok_needs_followup"
    SENIOR_NOT_HOME = "senior_not_home"
    MEDICAL_EMERGENCY = "medical_emergency"
    NON_MEDICAL_EMERGENCY = "non_medical_emergency"
    UNABLE_TO_CONTACT = "unable_to_contact"
    REFUSED_CHECK = "refused_check"


EMERGENCY_OUTCOMES = frozenset({Outcome.MEDICAL_EMERGENCY, Outcome.NON_MEDICAL_EMERGENCY})


class Severity(str, enum.Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class CheckInState(str, enum.Enum):
    OK = "ok"
    OVERDUE = "overdue"
    CRITICAL = "critical"
    PENDING = "pending"


class Role(str, enum.Enum):
    """Viewer roles.  Authentication and enforcement live outside the engine."""

    FAMILY = "FAMILY"
    CAREGIVER = "CAREGIVER"
    OFFICER = "OFFICER"
    ADMIN = "ADMIN"


# ---------------------------------------------------------------------------
# People
# ---------------------------------------------------------------------------

class EmergencyContact(BaseModel):
    name: str
    relationship: str = ""
    phone: str = ""
    email: Optional[str] = None
    is_primary: bool = False


class Person(BaseModel):
    """A monitored person as known to the care record (external collaborator)."""

    person_id: str
    tenant_id: str
    full_name: str = ""
    address: str = ""
    phone: str = ""
    emergency_contacts: list[EmergencyContact] = Field(default_factory=list)

    def primary_contact(self) -> Optional[EmergencyContact]:
        """The contact flagged primary, else the first one listed."""
        for contact in self.emergency_contacts:
            if contact.is_primary:
                return contact
        return self.emergency_contacts[0] if self.emergency_contacts else None


# ---------------------------------------------------------------------------
# Emergency profile
# ---------------------------------------------------------------------------

PROFILE_SECTIONS: dict[str, tuple[str, ...]] = {
    "mobility": (
        "bed_bound", "wheelchair_bound", "walker_required", "cane_required",
        "mobility_notes",
    ),
    "medical_equipment": (
        "oxygen_dependent", "oxygen_tank_location", "dialysis_required",
        "dialysis_schedule", "medical_equipment", "critical_medications",
        "medication_location", "medical_conditions_summary",
    ),
    "communication": (
        "hearing_impaired", "hearing_impaired_notes", "vision_impaired",
        "vision_impaired_notes", "cognitive_impairment",
        "cognitive_impairment_type", "cognitive_impairment_notes",
        "non_verbal", "non_verbal_notes", "language_barrier",
    ),
    "location_access": (
        "building_type", "floor_number", "building_quadrant",
        "elevator_required", "elevator_access_code", "stairs_to_unit",
        "door_code", "key_location", "access_instructions",
        "door_opens_inward", "security_system", "security_system_code",
        "pets_in_home", "parking_instructions", "gated_community_code",
        "lobby_access_instructions", "best_entrance", "intercom_instructions",
    ),
    "risk": ("fall_risk_high", "fall_history", "home_hazards"),
    "secondary_contacts": (
        "neighbor_name", "neighbor_address", "neighbor_phone",
        "building_manager_name", "building_manager_phone",
    ),
    "response_contract": ("response_priority", "escalation_delay_hours"),
    "consent": (
        "consent_obtained", "consent_date", "consent_given_by",
        "hipaa_authorization",
    ),
    "special_instructions": ("special_instructions",),
}
"""Explicit field groups of ``EmergencyProfile``, in display order."""


class EmergencyProfile(BaseModel):
    """Emergency-response profile for one monitored person.

    Profiles are versioned: every write stores a new version and the
    previous one is kept.  A profile without ``consent_obtained`` must never
    reach a responder.
    """

    profile_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    person_id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    version: int = Field(default=1, ge=1)

    # Mobility
    bed_bound: bool = False
    wheelchair_bound: bool = False
    walker_required: bool = False
    cane_required: bool = False
    mobility_notes: Optional[str] = None

    # Medical equipment
    oxygen_dependent: bool = False
    oxygen_tank_location: Optional[str] = None
    dialysis_required: bool = False
    dialysis_schedule: Optional[str] = None
    medical_equipment: list[str] = Field(default_factory=list)
    critical_medications: list[str] = Field(default_factory=list)
    medication_location: Optional[str] = None
    medical_conditions_summary: Optional[str] = None

    # Communication
    hearing_impaired: bool = False
    hearing_impaired_notes: Optional[str] = None
    vision_impaired: bool = False
    vision_impaired_notes: Optional[str] = None
    cognitive_impairment: bool = False
    cognitive_impairment_type: Optional[str] = None
    cognitive_impairment_notes: Optional[str] = None
    non_verbal: bool = False
    non_verbal_notes: Optional[str] = None
    language_barrier: Optional[str] = None

    # Location and access
    building_type: Optional[str] = None
    floor_number: Optional[str] = None
    building_quadrant: Optional[str] = None
    elevator_required: bool = False
    elevator_access_code: Optional[str] = None
    stairs_to_unit: Optional[int] = Field(default=None, ge=0)
    door_code: Optional[str] = None
    key_location: Optional[str] = None
    access_instructions: Optional[str] = None
    # False means the door opens outward.
    door_opens_inward: bool = False
    security_system: bool = False
    security_system_code: Optional[str] = None
    pets_in_home: Optional[str] = None
    parking_instructions: Optional[str] = None
    gated_community_code: Optional[str] = None
    lobby_access_instructions: Optional[str] = None
    best_entrance: Optional[str] = None
    intercom_instructions: Optional[str] = None

    # Risk
    fall_risk_high: bool = False
    fall_history: Optional[str] = None
    home_hazards: Optional[str] = None

    # Secondary contacts
    neighbor_name: Optional[str] = None
    neighbor_address: Optional[str] = None
    neighbor_phone: Optional[str] = None
    building_manager_name: Optional[str] = None
    building_manager_phone: Optional[str] = None

    # Response contract
    response_priority: ResponsePriority = ResponsePriority.STANDARD
    escalation_delay_hours: Optional[float] = Field(
        default=None,
        gt=0,
        description="Hours after the last check-in at which urgency reaches 100. "
                    "Falls back to the tier default when unset.",
    )

    # Consent
    consent_obtained: bool = False
    consent_date: Optional[date] = None
    consent_given_by: Optional[str] = None
    hipaa_authorization: bool = False

    special_instructions: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    updated_by: Optional[str] = None
    last_verified_date: Optional[date] = None

    def section(self, name: str) -> dict[str, Any]:
        """Return the fields of one ``PROFILE_SECTIONS`` group."""
        return {field: getattr(self, field) for field in PROFILE_SECTIONS[name]}

    @property
    def mobility_status(self) -> str:
        if self.bed_bound:
            return "Bed-bound"
        if self.wheelchair_bound:
            return "Wheelchair"
        if self.walker_required:
            return "Walker"
        return "Mobile"

    @property
    def special_needs(self) -> list[str]:
        needs = []
        if self.oxygen_dependent:
            needs.append("Oxygen")
        if self.cognitive_impairment:
            needs.append("Cognitive impairment")
        if self.hearing_impaired:
            needs.append("Hearing impaired")
        return needs


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class Alert(BaseModel):
    """Live record of one overdue person awaiting a welfare check."""

    alert_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    person_id: str
    tenant_id: str
    last_check_in_at: datetime
    hours_since_check_in: float = Field(..., ge=0)
    urgency_score: int = Field(..., ge=0)
    band: UrgencyBand
    response_priority: ResponsePriority = Field(
        ...,
        description="Copied from the profile when the alert opened.",
    )
    state: AlertState = AlertState.OPEN
    opened_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    dispatched_at: Optional[datetime] = None
    dispatched_by: Optional[str] = None
    check_initiated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    closed_reason: Optional[ClosedReason] = None

    @property
    def is_active(self) -> bool:
        return self.state != AlertState.CLOSED


class AlertView(BaseModel):
    """One row of the dispatch console's ranked alert feed."""

    alert_id: str
    person_id: str
    person_name: str
    address: str
    urgency_score: int
    band: UrgencyBand
    response_priority: ResponsePriority
    hours_since_check_in: float
    last_check_in_at: datetime
    state: AlertState
    mobility_status: str
    special_needs: Optional[str] = None
    emergency_contact: Optional[EmergencyContact] = None


# ---------------------------------------------------------------------------
# Welfare-check reports
# ---------------------------------------------------------------------------

class ReportSubmission(BaseModel):
    """Responder-supplied report input, validated by the lifecycle manager.

    ``outcome`` and ``check_completed_at`` are accepted loosely here so the
    manager can reject them with a specific error kind.
    """

    alert_id: str
    officer_id: str = Field(..., min_length=1)
    officer_name: str = ""
    outcome: str
    outcome_notes: str = ""
    check_completed_at: Any = None
    ems_called: bool = False
    family_notified: bool = False
    actions_taken: list[str] = Field(default_factory=list)
    transported_to: Optional[str] = None
    transport_reason: Optional[str] = None
    followup_required: bool = False
    followup_date: Optional[date] = None
    followup_notes: Optional[str] = None


class WelfareCheckReport(BaseModel):
    """Immutable record of a completed welfare check.

    Only the follow-up fields may change after the report is saved.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    alert_id: str
    tenant_id: str
    person_id: str
    officer_id: str
    officer_name: str = ""
    check_initiated_at: datetime
    check_completed_at: datetime
    outcome: Outcome
    outcome_notes: str = ""
    severity: Severity
    ems_called: bool = False
    family_notified: bool = False
    actions_taken: list[str] = Field(default_factory=list)
    transported_to: Optional[str] = None
    transport_reason: Optional[str] = None
    followup_required: bool = False
    followup_date: Optional[date] = None
    followup_notes: Optional[str] = None
    response_time_minutes: int = Field(..., ge=0)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("actions_taken")
    @classmethod
    def drop_duplicate_actions(cls, v: list[str]) -> list[str]:
        seen: set[str] = set()
        ordered = []
        for action in v:
            tag = action.strip()
            if tag and tag not in seen:
                seen.add(tag)
                ordered.append(tag)
        return ordered

    @property
    def is_emergency(self) -> bool:
        return self.outcome in EMERGENCY_OUTCOMES


# ---------------------------------------------------------------------------
# Monitoring views
# ---------------------------------------------------------------------------

class CheckInStatus(BaseModel):
    """Per-person row of the check-in status board."""

    person_id: str
    person_name: str
    address: str
    last_check_in_at: Optional[datetime] = None
    hours_since_check_in: Optional[float] = None
    status: CheckInState
    response_priority: ResponsePriority
    requires_action: bool


class WelfareCheckInfo(BaseModel):
    """Everything a responder needs before knocking on the door."""

    person: Person
    profile: Optional[EmergencyProfile] = None
    last_check_in_at: Optional[datetime] = None
    hours_since_check_in: Optional[float] = None
    mobility_status: str = "Unknown"
    special_needs: Optional[str] = None
    response_priority: ResponsePriority = ResponsePriority.STANDARD
    emergency_contact: Optional[EmergencyContact] = None
