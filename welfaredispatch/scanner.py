"""
Escalation Scanner and scan supervisor.

The scanner re-evaluates every consented, monitored person of a tenant
against the check-in ledger and the person's response contract, then opens,
updates, or retracts that person's alert.  It keeps no state between runs:
every scan recomputes from the ledger and the profile store.

**Per person, each scan:**

* No consent -> any active alert is retracted; the person is skipped.
* No known check-in -> skipped.
* Checked in since the alert was opened -> alert retracted, even when
  critical or already dispatched.  No new alert opens in the same scan.
* Active alert -> hours, score and band refreshed in place.
* No alert and hours above the tenant threshold -> alert opened.

``ScanSupervisor`` owns the periodic, per-tenant scan task.  Scans of the
same tenant never overlap (a tick that finds one running is skipped), each
scan runs under the tenant's timeout, and a failing tenant is logged and
skipped without touching other tenants.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional

from welfaredispatch.alerts import AlertStore
from welfaredispatch.audit import AuditEmitter, AuditEventType
from welfaredispatch.collaborators import CheckInLedger
from welfaredispatch.config import TenantPolicy, TenantRegistry
from welfaredispatch.errors import AlreadyResolved, UpstreamUnavailable
from welfaredispatch.models import (
    Alert,
    AlertState,
    ClosedReason,
    EmergencyProfile,
    ensure_utc,
    utc_now,
)
from welfaredispatch.profiles import EmergencyProfileStore
from welfaredispatch.urgency import assess

logger = logging.getLogger("welfaredispatch.scanner")


class ScanResult:
    """Counts of what one tenant scan did."""

    def __init__(self, tenant_id: str, scanned_at: datetime) -> None:
        self.tenant_id = tenant_id
        self.scanned_at = scanned_at
        self.opened = 0
        self.updated = 0
        self.retracted = 0
        self.skipped = 0
        self.duration_seconds = 0.0

    def __repr__(self) -> str:
        return (
            f"ScanResult(tenant={self.tenant_id}, opened={self.opened}, "
            f"updated={self.updated}, retracted={self.retracted}, "
            f"skipped={self.skipped})"
        )


class EscalationScanner:
    def __init__(
        self,
        profiles: EmergencyProfileStore,
        ledger: CheckInLedger,
        alerts: AlertStore,
        audit: AuditEmitter,
        registry: Optional[TenantRegistry] = None,
    ) -> None:
        self._profiles = profiles
        self._ledger = ledger
        self._alerts = alerts
        self._audit = audit
        self._registry = registry or TenantRegistry()

    def scan_tenant(self, tenant_id: str, now: Optional[datetime] = None) -> ScanResult:
        """Run one scan over every profile the tenant owns.

        Raises:
            UpstreamUnavailable: If the check-in ledger fails.  Alerts of
                people already scanned keep their new state.
        """
        now = ensure_utc(now) if now is not None else utc_now()
        started = time.monotonic()
        policy = self._registry.get_or_default(tenant_id)
        result = ScanResult(tenant_id, now)

        for profile in self._profiles.list_for_tenant(tenant_id):
            self._scan_person(profile, policy, now, result)

        result.duration_seconds = time.monotonic() - started
        logger.info(
            "Scan of tenant %s: opened=%d updated=%d retracted=%d skipped=%d (%.3fs)",
            tenant_id, result.opened, result.updated, result.retracted,
            result.skipped, result.duration_seconds,
        )
        return result

    # -- helpers --

    def _last_check_in(self, person_id: str) -> Optional[datetime]:
        try:
            last = self._ledger.last_check_in_at(person_id)
        except UpstreamUnavailable:
            raise
        except Exception as exc:
            raise UpstreamUnavailable(
                f"Check-in ledger failed for person '{person_id}': {exc}",
                person_id=person_id,
            ) from exc
        return ensure_utc(last) if last is not None else None

    def _scan_person(
        self,
        profile: EmergencyProfile,
        policy: TenantPolicy,
        now: datetime,
        result: ScanResult,
    ) -> None:
        active = self._alerts.get_active(profile.tenant_id, profile.person_id)

        if not profile.consent_obtained:
            if active is not None:
                self._retract(active, ClosedReason.CONSENT_WITHDRAWN, now, result)
            result.skipped += 1
            return

        last = self._last_check_in(profile.person_id)
        if last is None:
            result.skipped += 1
            return

        if active is not None and last > active.last_check_in_at:
            self._retract(active, ClosedReason.CHECKED_IN, now, result)
            return

        assessment = assess(last, now, profile, policy.escalation_delay_defaults)
        details = {
            "hours_since_check_in": round(assessment.hours_since_check_in, 3),
            "urgency_score": assessment.urgency_score,
            "band": assessment.band.value,
            "escalation_delay_hours": assessment.escalation_delay_hours,
        }

        if active is not None:
            updated = self._alerts.update_metrics(
                active.alert_id,
                assessment.hours_since_check_in,
                assessment.urgency_score,
                assessment.band,
                now,
            )
            if updated is None:
                # Closed by a report between the read and the update.
                return
            result.updated += 1
            self._audit.emit(
                AuditEventType.ALERT_UPDATED,
                tenant_id=profile.tenant_id,
                person_id=profile.person_id,
                details={"alert_id": active.alert_id, **details},
                timestamp=now,
            )
            return

        if assessment.hours_since_check_in <= policy.alert_threshold_hours:
            return

        alert = self._alerts.open(Alert(
            person_id=profile.person_id,
            tenant_id=profile.tenant_id,
            last_check_in_at=last,
            hours_since_check_in=assessment.hours_since_check_in,
            urgency_score=assessment.urgency_score,
            band=assessment.band,
            response_priority=profile.response_priority,
            opened_at=now,
            updated_at=now,
        ))
        result.opened += 1
        self._audit.emit(
            AuditEventType.ALERT_OPENED,
            tenant_id=profile.tenant_id,
            person_id=profile.person_id,
            details={
                "alert_id": alert.alert_id,
                "response_priority": profile.response_priority.value,
                **details,
            },
            timestamp=now,
        )

    def _retract(
        self,
        alert: Alert,
        reason: ClosedReason,
        now: datetime,
        result: ScanResult,
    ) -> None:
        try:
            self._alerts.transition(
                alert.alert_id,
                expected={AlertState.OPEN, AlertState.DISPATCHED},
                target=AlertState.CLOSED,
                closed_at=now,
                closed_reason=reason,
            )
        except AlreadyResolved:
            logger.debug("Alert %s closed by a report before retraction", alert.alert_id)
            return
        result.retracted += 1
        self._audit.emit(
            AuditEventType.ALERT_RETRACTED,
            tenant_id=alert.tenant_id,
            person_id=alert.person_id,
            details={
                "alert_id": alert.alert_id,
                "reason": reason.value,
                "previous_state": alert.state.value,
                "urgency_score": alert.urgency_score,
            },
            timestamp=now,
        )


# ---------------------------------------------------------------------------
# Scan supervisor
# ---------------------------------------------------------------------------

class ScanSupervisor:
    """Runs each tenant's scan on its own fixed timer.

    ``stats[tenant_id]`` counts ``completed``, ``skipped_overlap``,
    ``timed_out`` and ``failed`` cycles.
    """

    def __init__(
        self,
        scanner: EscalationScanner,
        registry: TenantRegistry,
    ) -> None:
        self._scanner = scanner
        self._registry = registry
        self._running: set[str] = set()
        self._stop = asyncio.Event()
        self.stats: dict[str, dict[str, int]] = defaultdict(
            lambda: {"completed": 0, "skipped_overlap": 0, "timed_out": 0, "failed": 0}
        )

    async def run_once(self, tenant_id: str) -> Optional[ScanResult]:
        """Run one scan cycle; returns None when the cycle was skipped."""
        if tenant_id in self._running:
            self.stats[tenant_id]["skipped_overlap"] += 1
            logger.warning("Scan of tenant %s still running; skipping this cycle", tenant_id)
            return None

        policy = self._registry.get_or_default(tenant_id)
        self._running.add(tenant_id)
        task = asyncio.ensure_future(asyncio.to_thread(self._scanner.scan_tenant, tenant_id))
        task.add_done_callback(lambda t: self._finished(tenant_id, t))

        try:
            result = await asyncio.wait_for(asyncio.shield(task), policy.scan_timeout_seconds)
        except asyncio.TimeoutError:
            self.stats[tenant_id]["timed_out"] += 1
            logger.warning(
                "Scan of tenant %s exceeded %.1fs; skipping until it finishes",
                tenant_id, policy.scan_timeout_seconds,
            )
            return None
        except UpstreamUnavailable as exc:
            self.stats[tenant_id]["failed"] += 1
            logger.warning("Scan of tenant %s skipped: %s", tenant_id, exc)
            return None
        except Exception:
            self.stats[tenant_id]["failed"] += 1
            logger.exception("Scan of tenant %s failed", tenant_id)
            return None

        self.stats[tenant_id]["completed"] += 1
        return result

    def _finished(self, tenant_id: str, task: asyncio.Future) -> None:
        self._running.discard(tenant_id)
        # Retrieve the outcome so an abandoned scan's failure is not lost.
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Scan task of tenant %s ended with %r", tenant_id, task.exception())

    def is_running(self, tenant_id: str) -> bool:
        return tenant_id in self._running

    async def run_tenant(self, tenant_id: str) -> None:
        """Scan ``tenant_id`` every ``scan_interval_seconds`` until stopped."""
        while not self._stop.is_set():
            await self.run_once(tenant_id)
            interval = self._registry.get_or_default(tenant_id).scan_interval_seconds
            try:
                await asyncio.wait_for(self._stop.wait(), interval)
            except asyncio.TimeoutError:
                pass

    async def run(self, tenant_ids: Optional[Iterable[str]] = None) -> None:
        """Run every tenant's loop until ``stop()`` is called."""
        tenants = list(tenant_ids) if tenant_ids is not None else self._registry.list_tenants()
        self._stop.clear()
        await asyncio.gather(*(self.run_tenant(t) for t in tenants))

    def stop(self) -> None:
        self._stop.set()
