"""
Viewer capabilities for emergency profiles.

Maps viewer roles to what they may do with a profile.  Family members see a
read-only rendering; caregivers and administrators may edit; responders see
the dispatch packet.  The engine checks who may view a profile;
authentication and enforcement of edits belong to the external auth
collaborator.
"""

from __future__ import annotations

import enum

from welfaredispatch.models import Role


class ProfileAccess(str, enum.Enum):
    READ_ONLY = "read_only"
    FULL_EDIT = "full_edit"


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------

# Maps (role, action) -> allowed
_PERMISSIONS: dict[tuple[Role, str], bool] = {
    (Role.FAMILY, "view_profile"): True,
    (Role.FAMILY, "edit_profile"): False,
    (Role.CAREGIVER, "view_profile"): True,
    (Role.CAREGIVER, "edit_profile"): True,
    (Role.OFFICER, "view_profile"): True,
    (Role.OFFICER, "edit_profile"): False,
    (Role.ADMIN, "view_profile"): True,
    (Role.ADMIN, "edit_profile"): True,
}


def check_permission(role: Role, action: str) -> bool:
    """Whether ``role`` may perform ``action``; unknown pairs are denied."""
    return _PERMISSIONS.get((role, action), False)


def require_permission(role: Role, action: str) -> None:
    if not check_permission(role, action):
        raise PermissionError(
            f"Role '{role.value}' is not permitted to perform action '{action}'."
        )


def profile_access_for(role: Role) -> ProfileAccess:
    """Rendering mode of an emergency profile for a viewer role."""
    if check_permission(role, "edit_profile"):
        return ProfileAccess.FULL_EDIT
    return ProfileAccess.READ_ONLY
