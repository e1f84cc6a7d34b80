"""
Emergency Profile Store.

Holds the versioned emergency-response profile of every monitored person.
Writes are upserts: the supplied fields are merged onto the latest version
and stored as a new version.  Nothing is ever hard-deleted.

**Consent gate.**  A write that leaves ``consent_obtained`` false is still
recorded (so drafts and consent withdrawals are never lost), but the call
raises ``ProfileConsentMissing`` and the profile is never handed out for
dispatch.  The scanner treats such a person as unmonitored.
"""

from __future__ import annotations

import logging
import threading
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel

from welfaredispatch.access import ProfileAccess, profile_access_for, require_permission
from welfaredispatch.audit import AuditEmitter, AuditEventType
from welfaredispatch.errors import NotFound, ProfileConsentMissing
from welfaredispatch.models import EmergencyProfile, Role, utc_now

logger = logging.getLogger("welfaredispatch.profiles")

# Fields callers may never set through an upsert.
_PROTECTED_FIELDS = frozenset({
    "profile_id", "person_id", "tenant_id", "version", "created_at",
    "updated_at", "updated_by", "last_verified_date",
})


class ProfileView(BaseModel):
    """A profile rendered for one viewer, with the capability they hold."""

    profile: EmergencyProfile
    access: ProfileAccess

    @property
    def editable(self) -> bool:
        return self.access == ProfileAccess.FULL_EDIT


class EmergencyProfileStore:
    """In-process, versioned profile store.

    Returned profiles are copies; mutating them does not change the store.
    """

    def __init__(self, audit: Optional[AuditEmitter] = None) -> None:
        self._versions: dict[str, list[EmergencyProfile]] = {}
        self._audit = audit
        self._lock = threading.Lock()

    def upsert(
        self,
        tenant_id: str,
        person_id: str,
        fields: dict[str, Any],
        actor_id: str = "SYSTEM",
    ) -> EmergencyProfile:
        """Create or update a person's profile.

        Args:
            tenant_id: Tenant that owns the person's care record.
            person_id: The monitored person.
            fields: Profile fields to set; unset fields keep their
                previous value.
            actor_id: Editor performing the write.

        Returns:
            The stored profile version.

        Raises:
            ValueError: If ``fields`` names an unknown or protected field.
            NotFound: If the person's profile belongs to another tenant.
            ProfileConsentMissing: If the stored version lacks consent.
            pydantic.ValidationError: If a field value is invalid.
        """
        unknown = set(fields) - set(EmergencyProfile.model_fields)
        if unknown:
            raise ValueError(f"Unknown profile fields: {sorted(unknown)}")
        protected = set(fields) & _PROTECTED_FIELDS
        if protected:
            raise ValueError(f"Fields cannot be set directly: {sorted(protected)}")

        now = utc_now()
        with self._lock:
            versions = self._versions.get(person_id, [])
            latest = versions[-1] if versions else None
            if latest is not None and latest.tenant_id != tenant_id:
                raise NotFound(
                    f"No profile for person '{person_id}' in tenant '{tenant_id}'",
                    person_id=person_id,
                )

            if latest is None:
                data: dict[str, Any] = {}
                created_at = now
                version = 1
            else:
                data = latest.model_dump(exclude=set(_PROTECTED_FIELDS))
                data["profile_id"] = latest.profile_id
                created_at = latest.created_at
                version = latest.version + 1
            data.update(fields)

            profile = EmergencyProfile(
                **data,
                person_id=person_id,
                tenant_id=tenant_id,
                version=version,
                created_at=created_at,
                updated_at=now,
                updated_by=actor_id,
                last_verified_date=date.today(),
            )
            self._versions.setdefault(person_id, []).append(profile)

        if self._audit is not None:
            self._audit.emit(
                AuditEventType.PROFILE_UPSERTED,
                tenant_id=tenant_id,
                person_id=person_id,
                actor_id=actor_id,
                details={
                    "version": profile.version,
                    "fields": sorted(fields),
                    "consent_obtained": profile.consent_obtained,
                },
            )

        if not profile.consent_obtained:
            logger.info(
                "Stored unconsented profile version %s for person %s",
                profile.version, person_id,
            )
            if self._audit is not None:
                self._audit.emit(
                    AuditEventType.PROFILE_CONSENT_MISSING,
                    tenant_id=tenant_id,
                    person_id=person_id,
                    actor_id=actor_id,
                    details={"version": profile.version},
                )
            raise ProfileConsentMissing(
                "Consent is required before emergency response information "
                "can be used for dispatch.",
                profile=profile.model_copy(deep=True),
                person_id=person_id,
            )

        return profile.model_copy(deep=True)

    def get(self, person_id: str) -> EmergencyProfile:
        """Latest profile version.  Raises ``NotFound`` when there is none."""
        with self._lock:
            versions = self._versions.get(person_id)
            if not versions:
                raise NotFound(f"No emergency profile for person '{person_id}'", person_id=person_id)
            return versions[-1].model_copy(deep=True)

    def get_dispatchable(self, person_id: str) -> Optional[EmergencyProfile]:
        """Latest profile if it may be used for dispatch, else None."""
        try:
            profile = self.get(person_id)
        except NotFound:
            return None
        return profile if profile.consent_obtained else None

    def history(self, person_id: str) -> list[EmergencyProfile]:
        """All versions, oldest first."""
        with self._lock:
            return [p.model_copy(deep=True) for p in self._versions.get(person_id, [])]

    def list_for_tenant(self, tenant_id: str) -> list[EmergencyProfile]:
        """Latest version of every profile owned by ``tenant_id``."""
        with self._lock:
            latest = [v[-1] for v in self._versions.values() if v]
        return [p.model_copy(deep=True) for p in latest if p.tenant_id == tenant_id]

    def view(self, person_id: str, role: Role) -> ProfileView:
        """Render the latest profile for a viewer role.

        Family members get a read-only view; editors get full edit.  The
        edit capability is advisory; the caller's auth layer enforces it.

        Raises:
            PermissionError: ``role`` may not view profiles.
            NotFound: No profile for ``person_id``.
        """
        require_permission(role, "view_profile")
        return ProfileView(profile=self.get(person_id), access=profile_access_for(role))
