"""Engine facade consumed by the UI shell."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Mapping, Optional

from mapsync.domain.common.notices import NoticeBoard
from mapsync.domain.common.supervisor import Supervisor
from mapsync.domain.common.timeutil import parse_timestamp
from mapsync.domain.geo.exceptions import GeoError
from mapsync.domain.geo.models import SelfPosition, TrackerState
from mapsync.domain.geo.profile_store import ProfileStore
from mapsync.domain.geo.tracker import GeoTracker
from mapsync.domain.notifications.aggregator import NotificationAggregator
from mapsync.domain.placement.spiral import PlacedPoint, spread
from mapsync.domain.roster.models import Entity, RelationshipChange
from mapsync.domain.roster.store import RosterStore
from mapsync.domain.roster.sync import RosterSync
from mapsync.domain.social import status
from mapsync.domain.social.machine import ActionOutcome, RelationshipMachine
from mapsync.domain.social.models import RelationshipStatus
from mapsync.infra.backend import GeolocationDevice, StorageBackend
from mapsync.infra.realtime import (
	BLOCKS_TABLE,
	PROFILES_TABLE,
	RELATIONSHIPS_TABLE,
	ChangeEvent,
	ChangeFeed,
	Subscription,
)
from mapsync.infra.sockets import SocketChangeBridge
from mapsync import obs
from mapsync.obs import logging as obs_logging
from mapsync.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SelfMarker:
	position: SelfPosition
	status_text: Optional[str] = None
	status_at: Optional[datetime] = None
	avatar_url: Optional[str] = None


class MapSyncEngine:
	"""Wires the tracker, roster, relationship machine and badges for one signed-in user."""

	def __init__(
		self,
		user_id: str,
		backend: StorageBackend,
		device: GeolocationDevice,
		feed: ChangeFeed,
		*,
		bridge: Optional[SocketChangeBridge] = None,
	) -> None:
		self.user_id = user_id
		self.feed = feed
		self.notices = NoticeBoard()
		self.supervisor = Supervisor(self.notices)
		self.store = RosterStore(user_id)
		self.roster_sync = RosterSync(self.store, backend)
		self.profile_store = ProfileStore(user_id, backend)
		self.tracker = GeoTracker(user_id, device, backend, self.profile_store, self.notices)
		self.machine = RelationshipMachine(self.store, backend, self.notices)
		self.badges = NotificationAggregator(user_id, backend)
		self._bridge = bridge
		self._subscriptions: List[Subscription] = []
		self._started = False
		self._start_lock = asyncio.Lock()

	# --- read model -------------------------------------------------------------

	@property
	def roster(self) -> Mapping[str, Entity]:
		return self.store.roster

	@property
	def self_marker(self) -> SelfMarker:
		profile = self.profile_store.profile
		return SelfMarker(
			position=self.tracker.position,
			status_text=profile.get("status_message"),
			status_at=parse_timestamp(profile.get("status_updated_at")),
			avatar_url=profile.get("avatar_url"),
		)

	@property
	def pending_count(self) -> int:
		return self.badges.pending_count

	@property
	def unread_count(self) -> int:
		return self.badges.unread_count

	@property
	def running(self) -> bool:
		return self._started

	def render_positions(self) -> List[PlacedPoint]:
		"""Roster positions fanned out for display; never written back."""
		points = [
			PlacedPoint(entity.id, entity.lat, entity.lng)
			for entity in self.store.roster.values()
			if entity.lat is not None and entity.lng is not None
		]
		return spread(points)

	def status_ring(self, entity_id: str) -> status.StatusRing:
		entity = self.store.get(entity_id)
		if entity is None:
			return status.StatusRing.DEFAULT
		return status.status_ring(self.user_id, entity)

	def is_muted(self, target_id: str) -> bool:
		relationship = self.badges.relationship_with(target_id)
		if relationship is None:
			return False
		return status.is_muted(relationship, self.user_id)

	# --- relationship actions -------------------------------------------------------

	async def poke(self, target_id: str) -> ActionOutcome:
		return await self.machine.poke(target_id)

	async def cancel(self, target_id: str) -> ActionOutcome:
		return await self.machine.cancel(target_id)

	async def block(self, target_id: str) -> ActionOutcome:
		return await self.machine.block(target_id)

	async def accept(self, target_id: str) -> ActionOutcome:
		return await self.machine.accept(target_id)

	async def decline(self, target_id: str) -> ActionOutcome:
		return await self.machine.decline(target_id)

	async def unblock(self, target_id: str) -> ActionOutcome:
		return await self.machine.unblock(target_id)

	async def mute(self, target_id: str, seconds: float) -> ActionOutcome:
		return await self.machine.mute(target_id, seconds)

	# --- location -------------------------------------------------------------

	async def enable_location(self) -> TrackerState:
		"""Start sharing; geolocation failures are already surfaced as notices."""
		try:
			return await self.tracker.enable()
		except GeoError:
			return self.tracker.state

	async def disable_location(self) -> None:
		await self.tracker.disable()

	async def set_ghost_mode(self, enabled: bool) -> None:
		if enabled:
			await self.tracker.disable(ghost=True)
		else:
			await self.tracker.leave_ghost_mode()

	# --- change feed --------------------------------------------------------------

	def _on_row_change(self, event: ChangeEvent) -> None:
		if event.table == PROFILES_TABLE:
			self.store.apply_change_event(event)
		elif event.table == RELATIONSHIPS_TABLE:
			change = self.store.apply_relationship_event(event)
			if change is not None:
				self._announce(change)
		elif event.table == BLOCKS_TABLE:
			self.store.apply_block_event(event)

	def _announce(self, change: RelationshipChange) -> None:
		previous, current = change.previous, change.current
		if current.status is RelationshipStatus.PENDING and current.is_incoming(self.user_id):
			self.notices.post("poke_received", "New poke received!")
		elif (
			current.status is RelationshipStatus.ACCEPTED
			and previous.status is RelationshipStatus.PENDING
			and previous.is_outgoing(self.user_id)
		):
			self.notices.post("poke_accepted", "Your poke was accepted!")

	# --- lifecycle ------------------------------------------------------------

	async def start(self) -> None:
		"""Hydrate, subscribe and start the poll and badge timers."""
		async with self._start_lock:
			if self._started:
				return
			await self._wire()
			self._started = True
		logger.info("engine started")

	async def _wire(self) -> None:
		obs.init()
		obs_logging.bind_context(user_id=self.user_id, channel="engine")
		cached: SelfPosition = await self.supervisor.guard(
			"profile_hydrate",
			self.profile_store.hydrate,
			fallback=SelfPosition(),
			notice="Could not load cached profile",
		)
		self.tracker.seed(cached)
		self._subscriptions.append(
			self.feed.subscribe((PROFILES_TABLE, RELATIONSHIPS_TABLE, BLOCKS_TABLE), self._on_row_change)
		)
		self._subscriptions.append(self.badges.subscribe(self.feed))
		if self._bridge is not None:
			await self.supervisor.guard("realtime_connect", self._bridge.connect, notice="Live updates unavailable")
		profile: Optional[Mapping[str, Any]] = await self.supervisor.guard(
			"profile_sync",
			self.profile_store.sync,
			notice="Could not load your profile",
		)
		if profile is not None:
			self.tracker.seed(self.profile_store.seed_position())
		self.supervisor.spawn_periodic("roster_poll", settings.roster_poll_interval_seconds, self.roster_sync.poll_once)
		self.supervisor.spawn_periodic("badge_refresh", settings.notification_refresh_seconds, self.badges.refresh)
		if profile and profile.get("is_location_on") and not profile.get("is_ghost_mode"):
			self.supervisor.spawn("geo_resume", self.enable_location)

	async def stop(self) -> None:
		"""Cancel timers, drop subscriptions and stop the location watch."""
		if not self._started:
			return
		self._started = False
		for subscription in self._subscriptions:
			subscription.unsubscribe()
		self._subscriptions.clear()
		await self.supervisor.shutdown()
		await self.tracker.shutdown()
		if self._bridge is not None:
			await self.supervisor.guard("realtime_disconnect", self._bridge.disconnect)
		logger.info("engine stopped")

	async def logout(self) -> None:
		await self.stop()
		await self.supervisor.guard("profile_teardown", self.profile_store.teardown)
		self.store.reset()
		self.badges.reset()
		obs_logging.clear_context()
