"""
Capability sets and the DRF permission classes built on them.

Views turn ``request.user`` into a :class:`Capabilities` value once and
pass it down to the services, so the services never look at the request
or at any global auth state.
"""
from __future__ import annotations

from dataclasses import dataclass

from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import BasePermission

VIEW = 'view'
MAP = 'map'
MANAGE = 'manage'

ROLE_CAPABILITIES = {
    'viewer': frozenset({VIEW}),
    'technician': frozenset({VIEW, MAP}),
    'lab_admin': frozenset({VIEW, MAP, MANAGE}),
    'super': frozenset({VIEW, MAP, MANAGE}),
}


@dataclass(frozen=True)
class Capabilities:
    granted: frozenset = frozenset()

    @classmethod
    def for_user(cls, user) -> "Capabilities":
        if not (user and getattr(user, 'is_authenticated', False)):
            return cls()
        if getattr(user, 'is_superuser', False):
            return cls.system()
        return cls(ROLE_CAPABILITIES.get(getattr(user, 'role', None), frozenset()))

    @classmethod
    def system(cls) -> "Capabilities":
        """Full set, used for device-triggered reconciliation and commands."""
        return cls(frozenset({VIEW, MAP, MANAGE}))

    def has(self, capability: str) -> bool:
        return capability in self.granted

    def require(self, capability: str) -> None:
        """Raise ``PermissionDenied`` unless ``capability`` is granted."""
        if capability not in self.granted:
            raise PermissionDenied(f"Missing '{capability}' capability for this operation.")


class _CapabilityPermission(BasePermission):
    capability = VIEW

    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        return Capabilities.for_user(getattr(request, 'user', None)).has(self.capability)


class CanView(_CapabilityPermission):
    """List devices, mappings, logs and staging rows."""
    capability = VIEW


class CanMap(_CapabilityPermission):
    """Trigger auto-map or map a single row."""
    capability = MAP


class CanManage(_CapabilityPermission):
    """Create, edit or delete channel mappings."""
    capability = MANAGE


class ViewOrManage(BasePermission):
    """Safe methods need ``view``; anything else needs ``manage``."""
    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        caps = Capabilities.for_user(getattr(request, 'user', None))
        if request.method in ('GET', 'HEAD', 'OPTIONS'):
            return caps.has(VIEW)
        return caps.has(MANAGE)


class IsDeviceConnector(BasePermission):
    """Request authenticated by :class:`lis.authentication.DeviceKeyAuthentication`."""
    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        from .models import LabDevice
        return isinstance(getattr(request, 'auth', None), LabDevice)
