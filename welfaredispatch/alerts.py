"""
Alert store and Alert Ranking Feed.

The store holds at most one active (Open or Dispatched) alert per person and
tenant.  Every state change goes through ``transition()``, a
compare-and-swap under the store lock, so two responders racing to close
the same alert get exactly one winner; the loser sees ``AlreadyResolved``.

**State machine:**

    Open -> Dispatched -> Closed

An Open alert may also go straight to Closed when the scanner retracts it
(the person checked in, or consent was withdrawn).  Closed is terminal,
except for the rollback the lifecycle manager performs when a report
cannot be persisted.

The ranking feed is read-only: it lists a tenant's active alerts by urgency
(descending), ties broken by the earliest last check-in.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Iterable, Optional

from welfaredispatch.collaborators import PersonDirectory
from welfaredispatch.errors import AlreadyResolved, InvalidTransition, NotFound
from welfaredispatch.models import Alert, AlertState, AlertView, UrgencyBand
from welfaredispatch.profiles import EmergencyProfileStore

logger = logging.getLogger("welfaredispatch.alerts")


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[AlertState, set[AlertState]] = {
    AlertState.OPEN: {AlertState.DISPATCHED, AlertState.CLOSED},
    AlertState.DISPATCHED: {AlertState.CLOSED},
    AlertState.CLOSED: set(),  # terminal state
}


class AlertStore:
    """Thread-safe in-process alert store.

    Returned alerts are copies; callers change state only through the
    store's methods.
    """

    def __init__(self) -> None:
        self._alerts: dict[str, Alert] = {}
        self._active: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    # -- reads --

    def get(self, alert_id: str) -> Alert:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise NotFound(f"Unknown alert '{alert_id}'", alert_id=alert_id)
            return alert.model_copy(deep=True)

    def get_active(self, tenant_id: str, person_id: str) -> Optional[Alert]:
        with self._lock:
            alert_id = self._active.get((tenant_id, person_id))
            if alert_id is None:
                return None
            return self._alerts[alert_id].model_copy(deep=True)

    def list_active(self, tenant_id: str) -> list[Alert]:
        with self._lock:
            return [
                self._alerts[alert_id].model_copy(deep=True)
                for (tenant, _), alert_id in self._active.items()
                if tenant == tenant_id
            ]

    def list_for_person(self, person_id: str) -> list[Alert]:
        with self._lock:
            return [
                a.model_copy(deep=True)
                for a in self._alerts.values()
                if a.person_id == person_id
            ]

    # -- writes --

    def open(self, alert: Alert) -> Alert:
        """Store a new Open alert.

        Raises:
            ValueError: If the person already has an active alert.
        """
        key = (alert.tenant_id, alert.person_id)
        with self._lock:
            if key in self._active:
                raise ValueError(
                    f"Person '{alert.person_id}' already has active alert "
                    f"'{self._active[key]}'"
                )
            stored = alert.model_copy(deep=True)
            stored.state = AlertState.OPEN
            self._alerts[stored.alert_id] = stored
            self._active[key] = stored.alert_id
            return stored.model_copy(deep=True)

    def update_metrics(
        self,
        alert_id: str,
        hours_since_check_in: float,
        urgency_score: int,
        band: UrgencyBand,
        now: datetime,
    ) -> Optional[Alert]:
        """Refresh an active alert's derived fields in place.

        Returns None if the alert was closed in the meantime.
        """
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise NotFound(f"Unknown alert '{alert_id}'", alert_id=alert_id)
            if not alert.is_active:
                return None
            alert.hours_since_check_in = hours_since_check_in
            alert.urgency_score = urgency_score
            alert.band = band
            alert.updated_at = now
            return alert.model_copy(deep=True)

    def transition(
        self,
        alert_id: str,
        expected: Iterable[AlertState],
        target: AlertState,
        **changes: Any,
    ) -> Alert:
        """Compare-and-swap the alert's state.

        The alert moves to ``target`` only if its current state is one of
        ``expected``; ``changes`` are applied in the same critical section.

        Raises:
            NotFound: Unknown alert.
            AlreadyResolved: The alert is already Closed.
            InvalidTransition: Any other state mismatch.
        """
        expected = set(expected)
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise NotFound(f"Unknown alert '{alert_id}'", alert_id=alert_id)
            if alert.state not in expected or target not in _VALID_TRANSITIONS[alert.state]:
                if alert.state == AlertState.CLOSED:
                    raise AlreadyResolved(
                        f"Alert '{alert_id}' is already closed "
                        f"({alert.closed_reason.value if alert.closed_reason else 'unknown'}).",
                        alert_id=alert_id,
                    )
                raise InvalidTransition(
                    f"Cannot transition alert '{alert_id}' from {alert.state.value} "
                    f"to {target.value}. Allowed transitions: "
                    f"{[s.value for s in _VALID_TRANSITIONS[alert.state]]}",
                    alert_id=alert_id,
                )
            alert.state = target
            for name, value in changes.items():
                setattr(alert, name, value)
            if target == AlertState.CLOSED:
                self._active.pop((alert.tenant_id, alert.person_id), None)
            return alert.model_copy(deep=True)

    def reopen_after_failed_close(self, alert_id: str, previous: Alert) -> Alert:
        """Undo a close whose report could not be persisted."""
        key = (previous.tenant_id, previous.person_id)
        with self._lock:
            alert = self._alerts[alert_id]
            if alert.state != AlertState.CLOSED:
                return alert.model_copy(deep=True)
            if key in self._active and self._active[key] != alert_id:
                logger.warning(
                    "Cannot reopen alert %s: person %s has a newer active alert",
                    alert_id, previous.person_id,
                )
                return alert.model_copy(deep=True)
            restored = previous.model_copy(deep=True)
            self._alerts[alert_id] = restored
            self._active[key] = alert_id
            return restored.model_copy(deep=True)


# ---------------------------------------------------------------------------
# Alert Ranking Feed
# ---------------------------------------------------------------------------

def rank_alerts(alerts: Iterable[Alert]) -> list[Alert]:
    """Urgency descending; ties go to the earliest last check-in."""
    return sorted(alerts, key=lambda a: (-a.urgency_score, a.last_check_in_at))


class AlertRankingFeed:
    """Read-only, tenant-scoped view of active alerts for a dispatch console."""

    def __init__(
        self,
        alerts: AlertStore,
        profiles: EmergencyProfileStore,
        directory: PersonDirectory,
    ) -> None:
        self._alerts = alerts
        self._profiles = profiles
        self._directory = directory

    def get_open_alerts(self, tenant_id: str) -> list[AlertView]:
        views = []
        for alert in rank_alerts(self._alerts.list_active(tenant_id)):
            # Consent may have been withdrawn since the last scan.
            profile = self._profiles.get_dispatchable(alert.person_id)
            if profile is None:
                continue
            try:
                person = self._directory.get(alert.person_id)
            except NotFound:
                logger.warning("Alert %s references unknown person %s", alert.alert_id, alert.person_id)
                person = None
            if person is not None and person.tenant_id != tenant_id:
                continue
            views.append(AlertView(
                alert_id=alert.alert_id,
                person_id=alert.person_id,
                person_name=person.full_name if person else "Unknown",
                address=person.address if person else "",
                urgency_score=alert.urgency_score,
                band=alert.band,
                response_priority=alert.response_priority,
                hours_since_check_in=alert.hours_since_check_in,
                last_check_in_at=alert.last_check_in_at,
                state=alert.state,
                mobility_status=profile.mobility_status,
                special_needs=", ".join(profile.special_needs) or None,
                emergency_contact=person.primary_contact() if person else None,
            ))
        return views
