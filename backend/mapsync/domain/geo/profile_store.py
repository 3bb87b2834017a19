"""Locally cached profile and last known position of the signed-in user.

Lifecycle: :meth:`ProfileStore.hydrate` reads the cache for an instant first render,
:meth:`ProfileStore.sync` reconciles it with the backend profile and
:meth:`ProfileStore.teardown` clears it on logout.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

from mapsync.domain.common.timeutil import utcnow
from mapsync.domain.geo.models import SelfPosition
from mapsync.infra.backend import ProfileBackend
from mapsync.infra.redis import redis_client
from mapsync.settings import settings

logger = logging.getLogger(__name__)


def _profile_key(user_id: str) -> str:
	return f"profile:{user_id}"


def _location_key(user_id: str) -> str:
	return f"location:{user_id}"


def _encode(mapping: Mapping[str, Any]) -> Dict[str, str]:
	return {key: json.dumps(value, default=str) for key, value in mapping.items()}


def _decode(mapping: Mapping[str, str]) -> Dict[str, Any]:
	decoded: Dict[str, Any] = {}
	for key, raw in mapping.items():
		try:
			decoded[key] = json.loads(raw)
		except (TypeError, ValueError):
			decoded[key] = raw
	return decoded


class ProfileStore:
	def __init__(self, user_id: str, backend: ProfileBackend) -> None:
		self.user_id = user_id
		self._backend = backend
		self._profile: Dict[str, Any] = {}
		self._location: Optional[tuple[float, float]] = None

	@property
	def profile(self) -> Mapping[str, Any]:
		return dict(self._profile)

	@property
	def location(self) -> Optional[tuple[float, float]]:
		return self._location

	async def hydrate(self) -> SelfPosition:
		"""Load the cached profile and location; returns the seed for the self marker."""
		cached_profile = await redis_client.hgetall(_profile_key(self.user_id))
		cached_location = await redis_client.hgetall(_location_key(self.user_id))
		self._profile = _decode(cached_profile or {})
		location = _decode(cached_location or {})
		if location.get("lat") is not None and location.get("lng") is not None:
			self._location = (float(location["lat"]), float(location["lng"]))
		return self.seed_position()

	async def sync(self) -> Mapping[str, Any]:
		"""Fetch the backend profile, merge it over the cache and persist the result."""
		remote = await self._backend.get_profile(self.user_id)
		if remote is None:
			logger.info("profile missing on backend; keeping cache")
			return self.profile
		self._profile = {**self._profile, **remote}
		if remote.get("latitude") is not None and remote.get("longitude") is not None:
			await self.save_location(float(remote["latitude"]), float(remote["longitude"]))
		await self._persist_profile()
		return self.profile

	async def update_profile(self, fields: Mapping[str, Any]) -> None:
		"""Record fields just written to the backend so the next hydrate sees them."""
		self._profile.update(fields)
		await self._persist_profile()

	async def save_location(self, lat: float, lng: float) -> None:
		self._location = (lat, lng)
		await redis_client.hset_with_ttl(
			_location_key(self.user_id),
			_encode({"lat": lat, "lng": lng, "updated_at": utcnow().isoformat()}),
			settings.profile_cache_ttl_seconds,
		)

	async def clear_location(self) -> None:
		self._location = None
		await redis_client.delete(_location_key(self.user_id))

	async def teardown(self) -> None:
		self._profile = {}
		self._location = None
		await redis_client.delete(_profile_key(self.user_id), _location_key(self.user_id))

	def seed_position(self) -> SelfPosition:
		lat, lng = self._location if self._location else (None, None)
		return SelfPosition(
			lat=lat,
			lng=lng,
			enabled=bool(self._profile.get("is_location_on", False)),
			ghost=bool(self._profile.get("is_ghost_mode") or False),
		)

	async def _persist_profile(self) -> None:
		if not self._profile:
			return
		await redis_client.hset_with_ttl(
			_profile_key(self.user_id),
			_encode(self._profile),
			settings.profile_cache_ttl_seconds,
		)
