"""Self-position models for the geolocation tracker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class TrackerState(str, Enum):
	DISABLED = "disabled"
	ACQUIRING = "acquiring"
	ACTIVE = "active"


@dataclass(frozen=True, slots=True)
class Position:
	"""One fix reported by the device."""

	lat: float
	lng: float
	accuracy: Optional[float] = None
	timestamp: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class SelfPosition:
	"""The local user's marker: where they are and whether they share it."""

	lat: Optional[float] = None
	lng: Optional[float] = None
	enabled: bool = False
	ghost: bool = False
	loading: bool = False

	@property
	def has_position(self) -> bool:
		return self.lat is not None and self.lng is not None
