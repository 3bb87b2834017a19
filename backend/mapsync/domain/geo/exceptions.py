"""Geolocation failures reported by the device or the tracker."""

from __future__ import annotations

from mapsync.infra.errors import SyncError


class GeoError(SyncError):
    """Base class for geolocation failures; none of them are retried automatically."""

    reason: str = "geo"


class PermissionDenied(GeoError):
    reason = "permission_denied"


class LocationTimeout(GeoError):
    reason = "timeout"


class PositionUnavailable(GeoError):
    reason = "position_unavailable"
