"""Geolocation domain exports."""

from .models import Position, SelfPosition, TrackerState
from .profile_store import ProfileStore
from .tracker import GeoTracker

__all__ = ["GeoTracker", "Position", "ProfileStore", "SelfPosition", "TrackerState"]
