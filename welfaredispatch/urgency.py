"""
Urgency scoring for overdue check-ins.

Turns the time since a person's last check-in into an urgency score
relative to that person's response contract:

    urgency_score = round(100 * hours_since_check_in / escalation_delay_hours)

A person exactly at the end of their allotted window scores 100; the score
keeps growing after that.  The display band is derived from the score
alone and is independent of the stored response tier.  The tier only sets
the denominator, so a very overdue "standard" person still surfaces as
critical.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from welfaredispatch.config import EscalationDelayDefaults
from welfaredispatch.models import (
    CheckInState,
    EmergencyProfile,
    ResponsePriority,
    UrgencyBand,
    ensure_utc,
)

_SECONDS_PER_HOUR = 3600.0

# (minimum score, band), checked in order; first match wins.
_BAND_THRESHOLDS: tuple[tuple[float, UrgencyBand], ...] = (
    (100.0, UrgencyBand.CRITICAL),
    (75.0, UrgencyBand.HIGH),
    (50.0, UrgencyBand.ELEVATED),
)

# Fraction of the response window after which a check-in counts as overdue.
OVERDUE_FRACTION = 0.75


class UrgencyAssessment:
    """Urgency of one person at one point in time."""

    def __init__(
        self,
        hours_since_check_in: float,
        escalation_delay_hours: float,
        urgency_score: int,
        band: UrgencyBand,
    ) -> None:
        self.hours_since_check_in = hours_since_check_in
        self.escalation_delay_hours = escalation_delay_hours
        self.urgency_score = urgency_score
        self.band = band

    def __repr__(self) -> str:
        return (
            f"UrgencyAssessment(hours={self.hours_since_check_in:.3f}, "
            f"delay={self.escalation_delay_hours}, score={self.urgency_score}, "
            f"band={self.band.value})"
        )


def hours_since(last_check_in_at: datetime, now: datetime) -> float:
    """Elapsed hours, clamped at zero for check-ins stamped in the future."""
    elapsed = (ensure_utc(now) - ensure_utc(last_check_in_at)).total_seconds()
    return max(0.0, elapsed / _SECONDS_PER_HOUR)


def resolve_escalation_delay(
    profile: Optional[EmergencyProfile],
    defaults: Optional[EscalationDelayDefaults] = None,
) -> float:
    """The profile's own delay, else the tier default."""
    defaults = defaults or EscalationDelayDefaults()
    if profile is None:
        return defaults.for_priority(ResponsePriority.STANDARD)
    if profile.escalation_delay_hours is not None:
        return profile.escalation_delay_hours
    return defaults.for_priority(profile.response_priority)


def urgency_score(hours_since_check_in: float, escalation_delay_hours: float) -> int:
    """``round(100 * hours / delay)`` with halves rounded up.

    Raises:
        ValueError: If ``escalation_delay_hours`` is not positive.
    """
    if escalation_delay_hours <= 0:
        raise ValueError(
            f"escalation_delay_hours must be positive, got {escalation_delay_hours}"
        )
    ratio = 100.0 * hours_since_check_in / escalation_delay_hours
    return int(math.floor(ratio + 0.5))


def band_for_score(score: float) -> UrgencyBand:
    for minimum, band in _BAND_THRESHOLDS:
        if score >= minimum:
            return band
    return UrgencyBand.NORMAL


def assess(
    last_check_in_at: datetime,
    now: datetime,
    profile: Optional[EmergencyProfile],
    defaults: Optional[EscalationDelayDefaults] = None,
) -> UrgencyAssessment:
    """Score one person against their response contract."""
    hours = hours_since(last_check_in_at, now)
    delay = resolve_escalation_delay(profile, defaults)
    score = urgency_score(hours, delay)
    return UrgencyAssessment(
        hours_since_check_in=hours,
        escalation_delay_hours=delay,
        urgency_score=score,
        band=band_for_score(score),
    )


def check_in_state(
    hours_since_check_in: Optional[float],
    escalation_delay_hours: float,
) -> CheckInState:
    """Status-board state: pending without a check-in, critical past the
    window, overdue past ``OVERDUE_FRACTION`` of it, ok otherwise."""
    if hours_since_check_in is None:
        return CheckInState.PENDING
    if hours_since_check_in >= escalation_delay_hours:
        return CheckInState.CRITICAL
    if hours_since_check_in >= escalation_delay_hours * OVERDUE_FRACTION:
        return CheckInState.OVERDUE
    return CheckInState.OK
