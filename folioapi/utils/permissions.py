"""Permission utility functions"""

from __future__ import annotations

ADMIN_ROLES = ("ADMIN", "SUPERADMIN")


def is_superadmin(user):
    """Check if user has superadmin role."""
    if user is None:
        return False
    return getattr(user, "role", None) == "SUPERADMIN"


def is_admin_or_higher(user):
    """Check if user has admin or superadmin role."""
    if user is None:
        return False
    return getattr(user, "role", None) in ADMIN_ROLES


def can_force_unlock(user):
    """Admins may lift a lockout; it is always audited."""
    return is_admin_or_higher(user)


def can_run_migrations(user):
    """Schema migrations are restricted to superadmins."""
    return is_superadmin(user)
