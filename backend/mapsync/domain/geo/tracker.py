"""Location sharing state machine: disabled -> acquiring -> active."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from mapsync.domain.common.notices import NoticeBoard, NoticeKind
from mapsync.domain.common.timeutil import utcnow
from mapsync.domain.geo.exceptions import GeoError, LocationTimeout, PermissionDenied
from mapsync.domain.geo.models import Position, SelfPosition, TrackerState
from mapsync.domain.geo.profile_store import ProfileStore
from mapsync.infra.backend import GeolocationDevice, ProfileBackend
from mapsync.infra.errors import SyncError
from mapsync.infra.redis import CACHE_ERRORS
from mapsync.obs import metrics as obs_metrics
from mapsync.settings import settings

logger = logging.getLogger(__name__)

PositionListener = Callable[[SelfPosition], None]
ErrorListener = Callable[[GeoError], None]


class GeoTracker:
	"""Wraps the device location API and persists the local user's position.

	Remote writes from the continuous watch are throttled to one per
	``geo_remote_write_min_interval_seconds``; the local cache is updated on every fix.
	A :meth:`disable` that lands while :meth:`enable` is still waiting for its first fix
	wins, and the late fix is dropped.
	"""

	def __init__(
		self,
		user_id: str,
		device: GeolocationDevice,
		backend: ProfileBackend,
		profile_store: ProfileStore,
		notices: NoticeBoard,
		*,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self.user_id = user_id
		self._device = device
		self._backend = backend
		self._profile_store = profile_store
		self._notices = notices
		self._clock = clock
		self._state = TrackerState.DISABLED
		self._position = SelfPosition()
		self._watch_id: Optional[int] = None
		self._generation = 0
		self._last_remote_write: Optional[float] = None
		self._pending: Set[asyncio.Task] = set()
		self._listeners: List[PositionListener] = []
		self._error_listeners: List[ErrorListener] = []

	@property
	def state(self) -> TrackerState:
		return self._state

	@property
	def position(self) -> SelfPosition:
		return self._position

	@property
	def watching(self) -> bool:
		return self._watch_id is not None

	def add_listener(self, listener: PositionListener) -> None:
		self._listeners.append(listener)

	def add_error_listener(self, listener: ErrorListener) -> None:
		self._error_listeners.append(listener)

	def seed(self, position: SelfPosition) -> None:
		"""Show a cached position before tracking starts."""
		if self._state is TrackerState.DISABLED:
			self._publish(position)

	def _publish(self, position: SelfPosition) -> None:
		self._position = position
		for listener in list(self._listeners):
			listener(position)

	def _transition(self, state: TrackerState) -> None:
		if state is self._state:
			return
		self._state = state
		obs_metrics.inc_geo_transition(state.value)
		logger.info("geo tracker transition", extra={"state": state.value})

	# --- enable -------------------------------------------------------------

	async def enable(self) -> TrackerState:
		"""Take a one-shot fix, persist it, then start the continuous watch.

		Geolocation failures move the tracker back to ``DISABLED`` and are re-raised.
		"""
		if self._state is not TrackerState.DISABLED:
			return self._state
		self._generation += 1
		generation = self._generation
		self._transition(TrackerState.ACQUIRING)
		self._publish(replace(self._position, enabled=True, ghost=False, loading=True))
		timeout = settings.geo_fix_timeout_seconds
		try:
			try:
				fix = await asyncio.wait_for(
					self._device.get_current_position(high_accuracy=True, timeout=timeout),
					timeout=timeout,
				)
			except asyncio.TimeoutError as exc:
				raise LocationTimeout() from exc
		except GeoError as exc:
			if generation == self._generation:
				self._fail(exc)
			raise
		if generation != self._generation:
			logger.debug("discarding fix from a superseded enable")
			return self._state

		await asyncio.wait({self._track(asyncio.ensure_future(self._store_locally(fix)))})
		if generation != self._generation:
			return self._state
		write = self._schedule_remote_write(fix, enabling=True)
		await asyncio.wait({write})
		if generation != self._generation:
			return self._state
		if not write.cancelled() and write.exception() is None and not write.result():
			self._notices.post("location_sync_failed", "Location saved locally; will retry")

		self._watch_id = self._device.watch_position(self._on_watch, self._on_watch_error)
		self._transition(TrackerState.ACTIVE)
		self._publish(SelfPosition(lat=fix.lat, lng=fix.lng, enabled=True, ghost=False, loading=False))
		return self._state

	def _fail(self, exc: GeoError) -> None:
		self._stop_watch()
		self._transition(TrackerState.DISABLED)
		self._publish(replace(self._position, enabled=False, loading=False))
		logger.warning("geolocation failed", extra={"reason": exc.reason})
		if isinstance(exc, PermissionDenied):
			self._notices.post(
				"location_permission_denied",
				"Location access denied. Enable it in your settings to appear on the map.",
				NoticeKind.PERSISTENT,
			)
		else:
			self._notices.post(f"location_{exc.reason}", "Could not get your location")
		for listener in list(self._error_listeners):
			listener(exc)

	# --- continuous watch -----------------------------------------------------

	def _on_watch(self, fix: Position) -> None:
		if self._state is not TrackerState.ACTIVE:
			return
		self._publish(replace(self._position, lat=fix.lat, lng=fix.lng, loading=False))
		self._track(asyncio.ensure_future(self._store_locally(fix)))
		now = self._clock()
		interval = settings.geo_remote_write_min_interval_seconds
		if self._last_remote_write is not None and now - self._last_remote_write < interval:
			obs_metrics.inc_geo_write("throttled")
			return
		self._schedule_remote_write(fix)

	def _on_watch_error(self, exc: Exception) -> None:
		if self._state is TrackerState.DISABLED:
			return
		if not isinstance(exc, GeoError):
			logger.warning("unexpected watch error", extra={"error": type(exc).__name__})
			return
		self._generation += 1
		self._cancel_pending()
		self._fail(exc)

	# --- writes -------------------------------------------------------------

	def _track(self, task: asyncio.Task) -> asyncio.Task:
		self._pending.add(task)
		task.add_done_callback(self._pending.discard)
		return task

	async def _cache(self, op: str, call: Callable[..., Awaitable[None]], *args: Any) -> bool:
		"""Run a local cache write; a cache outage is logged and counted, never raised."""
		try:
			await call(*args)
		except CACHE_ERRORS as exc:
			obs_metrics.inc_cache_failure(op)
			logger.warning("profile cache write failed", extra={"op": op, "error": type(exc).__name__})
			return False
		return True

	async def _store_locally(self, fix: Position) -> None:
		await self._cache("save_location", self._profile_store.save_location, fix.lat, fix.lng)

	def _schedule_remote_write(self, fix: Position, *, enabling: bool = False) -> asyncio.Task:
		self._last_remote_write = self._clock()
		fields: Dict[str, Any] = {
			"latitude": fix.lat,
			"longitude": fix.lng,
			"last_active": utcnow().isoformat(),
			"is_location_on": True,
		}
		if enabling:
			fields["is_ghost_mode"] = False
		return self._track(asyncio.create_task(self._write_remote(fields), name=f"geo-write:{self.user_id}"))

	async def _write_remote(self, fields: Dict[str, Any]) -> bool:
		try:
			await self._backend.patch_profile(self.user_id, fields)
		except SyncError as exc:
			obs_metrics.inc_geo_write("failed")
			logger.warning("position write failed", extra={"reason": exc.reason})
			return False
		obs_metrics.inc_geo_write("ok")
		return True

	def _cancel_pending(self) -> None:
		for task in list(self._pending):
			task.cancel()

	async def _drain_pending(self) -> None:
		tasks = list(self._pending)
		for task in tasks:
			task.cancel()
		for task in tasks:
			with suppress(asyncio.CancelledError):
				await task

	def _stop_watch(self) -> None:
		if self._watch_id is not None:
			self._device.clear_watch(self._watch_id)
			self._watch_id = None

	# --- disable ------------------------------------------------------------

	async def disable(self, *, ghost: bool = False) -> None:
		"""Stop sharing: stop the watch, write the off marker, then drop the cached position.

		The backend marker is written before the local cache is touched.
		"""
		self._generation += 1
		self._stop_watch()
		await self._drain_pending()
		self._last_remote_write = None
		self._transition(TrackerState.DISABLED)
		self._publish(SelfPosition(enabled=False, ghost=ghost or self._position.ghost, loading=False))
		marker: Dict[str, Any] = {"latitude": None, "longitude": None, "is_location_on": False}
		if ghost:
			marker["is_ghost_mode"] = True
		try:
			await self._backend.patch_profile(self.user_id, marker)
		except SyncError as exc:
			obs_metrics.inc_geo_write("failed")
			logger.warning("location off marker write failed", extra={"reason": exc.reason})
			self._notices.post("location_sync_failed", "Could not update your location settings")
			await self._cache("clear_location", self._profile_store.clear_location)
			return
		obs_metrics.inc_geo_write("marker")
		cleared = await self._cache("clear_location", self._profile_store.clear_location)
		saved = await self._cache("update_profile", self._profile_store.update_profile, marker)
		if not (cleared and saved):
			self._notices.post("location_cache_failed", "Location turned off; local data could not be cleared")

	async def leave_ghost_mode(self) -> None:
		"""Clear the ghost flag; location sharing stays off until :meth:`enable`."""
		try:
			await self._backend.patch_profile(self.user_id, {"is_ghost_mode": False})
		except SyncError as exc:
			logger.warning("ghost mode write failed", extra={"reason": exc.reason})
			self._notices.post("ghost_mode_failed", "Could not turn off ghost mode")
			return
		await self._cache("update_profile", self._profile_store.update_profile, {"is_ghost_mode": False})
		self._publish(replace(self._position, ghost=False))

	async def shutdown(self) -> None:
		"""Stop the watch and any in-flight writes without touching the backend."""
		self._generation += 1
		self._stop_watch()
		await self._drain_pending()
		self._transition(TrackerState.DISABLED)
