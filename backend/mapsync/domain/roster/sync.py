"""Periodic full re-fetch of the roster (blocks, relationships, visible profiles)."""

from __future__ import annotations

import asyncio
import logging

from mapsync.domain.roster.models import BlockedSet
from mapsync.domain.roster.store import RosterStore
from mapsync.infra.backend import RosterBackend
from mapsync.infra.errors import TransientNetworkFailure
from mapsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class RosterSync:
	"""Runs poll cycles against the backend and merges the results into the store."""

	def __init__(self, store: RosterStore, backend: RosterBackend) -> None:
		self._store = store
		self._backend = backend

	async def poll_once(self) -> bool:
		"""Run one cycle; returns False when the backend could not be reached."""
		self_id = self._store.self_id
		issued_at = self._store.begin_snapshot()
		try:
			block_rows, relationship_rows, profile_rows = await asyncio.gather(
				self._backend.list_blocks(self_id),
				self._backend.list_relationships(self_id),
				self._backend.fetch_visible_profiles(self_id),
			)
		except TransientNetworkFailure as exc:
			# retried on the next cycle, never immediately
			obs_metrics.inc_poll_cycle("failed")
			logger.warning("roster poll failed", extra={"reason": exc.reason})
			return False
		blocked = BlockedSet.from_rows(self_id, block_rows, relationship_rows)
		self._store.replace_blocked(blocked, issued_at)
		self._store.apply_relationship_snapshot(relationship_rows, issued_at)
		self._store.apply_snapshot(profile_rows, issued_at)
		obs_metrics.inc_poll_cycle("ok")
		return True
