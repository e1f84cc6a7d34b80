"""
Tenant Policy Engine -- Per-Tenant Configuration for the Welfare-Check Engine.

Every tenant (a precinct, a senior-living operator, a county program) runs
its own scan cadence, alert threshold, and tier defaults for the response
contract.  These settings are held as validated pydantic models, registered
per tenant, and can be loaded from YAML.

The scanner and the report lifecycle manager read the policy of the tenant
they are working for; a tenant without a registered policy runs on
``DEFAULT_POLICY``.
"""

from __future__ import annotations

import copy
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from welfaredispatch.models import DEFAULT_ESCALATION_DELAY_HOURS, ResponsePriority


# ---------------------------------------------------------------------------
# Tier defaults
# ---------------------------------------------------------------------------

class EscalationDelayDefaults(BaseModel):
    """Fallback ``escalation_delay_hours`` per response tier.

    Used only when a profile leaves its own delay unset.  A more urgent tier
    can never get a longer window than a less urgent one.
    """

    standard: float = Field(
        default=DEFAULT_ESCALATION_DELAY_HOURS[ResponsePriority.STANDARD],
        gt=0,
    )
    high: float = Field(
        default=DEFAULT_ESCALATION_DELAY_HOURS[ResponsePriority.HIGH],
        gt=0,
    )
    critical: float = Field(
        default=DEFAULT_ESCALATION_DELAY_HOURS[ResponsePriority.CRITICAL],
        gt=0,
    )

    @field_validator("high")
    @classmethod
    def high_within_standard(cls, v: float, info) -> float:
        standard = info.data.get("standard")
        if standard is not None and v > standard:
            raise ValueError(f"high ({v}) must be <= standard ({standard})")
        return v

    @field_validator("critical")
    @classmethod
    def critical_within_high(cls, v: float, info) -> float:
        high = info.data.get("high")
        if high is not None and v > high:
            raise ValueError(f"critical ({v}) must be <= high ({high})")
        return v

    def for_priority(self, priority: ResponsePriority) -> float:
        if priority == ResponsePriority.CRITICAL:
            return self.critical
        if priority == ResponsePriority.HIGH:
            return self.high
        return self.standard


# ---------------------------------------------------------------------------
# Tenant policy model
# ---------------------------------------------------------------------------

class TenantPolicy(BaseModel):
    """Complete engine policy for a single tenant."""

    tenant_id: str = Field(
        ...,
        min_length=1,
        description="Isolation key: alerts, profiles, reports and audit events are scoped by it.",
    )
    tenant_name: str = Field(..., min_length=1)
    scan_interval_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Seconds between escalation scans for this tenant.",
    )
    scan_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="A scan running longer than this is abandoned and logged.",
    )
    alert_threshold_hours: float = Field(
        default=0.0,
        ge=0,
        description="Hours since the last check-in after which an alert opens.",
    )
    escalation_delay_defaults: EscalationDelayDefaults = Field(
        default_factory=EscalationDelayDefaults,
    )
    emergency_submit_retries: int = Field(
        default=3,
        ge=0,
        description="Extra persistence attempts for emergency-outcome reports.",
    )
    report_history_limit: int = Field(default=20, gt=0)

    @model_validator(mode="after")
    def timeout_within_interval(self) -> "TenantPolicy":
        if self.scan_timeout_seconds > self.scan_interval_seconds:
            raise ValueError(
                f"scan_timeout_seconds ({self.scan_timeout_seconds}) must be <= "
                f"scan_interval_seconds ({self.scan_interval_seconds})"
            )
        return self


DEFAULT_POLICY = TenantPolicy(
    tenant_id="default",
    tenant_name="Default Policy",
)
"""Policy used for tenants that never registered their own."""


# ---------------------------------------------------------------------------
# Tenant registry
# ---------------------------------------------------------------------------

class TenantRegistry:
    """In-memory registry of tenant policies keyed by ``tenant_id``."""

    def __init__(self) -> None:
        self._policies: dict[str, TenantPolicy] = {}

    def register(self, policy: TenantPolicy) -> None:
        """Register a new tenant policy.

        Raises:
            ValueError: If ``tenant_id`` is already registered.
        """
        if policy.tenant_id in self._policies:
            raise ValueError(
                f"Policy for tenant_id '{policy.tenant_id}' already registered. "
                "Use update() to modify an existing policy."
            )
        self._policies[policy.tenant_id] = copy.deepcopy(policy)

    def get(self, tenant_id: str) -> TenantPolicy:
        """Return a copy of the tenant's policy.

        Raises:
            KeyError: If no policy is registered for ``tenant_id``.
        """
        if tenant_id not in self._policies:
            raise KeyError(f"No policy registered for tenant_id '{tenant_id}'")
        return copy.deepcopy(self._policies[tenant_id])

    def get_or_default(self, tenant_id: str) -> TenantPolicy:
        if tenant_id in self._policies:
            return copy.deepcopy(self._policies[tenant_id])
        return DEFAULT_POLICY.model_copy(update={"tenant_id": tenant_id})

    def update(self, policy: TenantPolicy) -> None:
        if policy.tenant_id not in self._policies:
            raise KeyError(
                f"Cannot update: no policy registered for tenant_id '{policy.tenant_id}'"
            )
        self._policies[policy.tenant_id] = copy.deepcopy(policy)

    def list_tenants(self) -> list[str]:
        return sorted(self._policies.keys())

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._policies


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_tenant_policies_from_yaml(path: str | Path) -> list[TenantPolicy]:
    """Load tenant policies from a YAML file.

    The file must contain a top-level ``tenants`` key with a list of policy
    objects::

        tenants:
          - tenant_id: "precinct_3"
            tenant_name: "Precinct 3 Are You OK Program"
            scan_interval_seconds: 120
            escalation_delay_defaults:
              standard: 6
              high: 4
              critical: 2

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any policy fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tenant policy file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "tenants" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'tenants' key with a list of policy objects."
        )

    entries = raw["tenants"]
    if not isinstance(entries, list):
        raise ValueError("'tenants' must be a list of policy objects.")

    policies: list[TenantPolicy] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"Tenant entry at index {idx} must be a mapping.")
        policies.append(TenantPolicy.model_validate(entry))

    return policies
