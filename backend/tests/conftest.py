import asyncio
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from mapsync.domain.geo.models import Position
from mapsync.infra.memory import InMemoryBackend
from mapsync.infra.realtime import ChangeFeed
from mapsync.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from mapsync.infra.redis import redis_client, set_redis_client
	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Short timers so loops tick inside a test."""
	originals = {
		"environment": settings.environment,
		"obs_enabled": settings.obs_enabled,
		"roster_poll_interval_seconds": settings.roster_poll_interval_seconds,
		"notification_refresh_seconds": settings.notification_refresh_seconds,
		"geo_fix_timeout_seconds": settings.geo_fix_timeout_seconds,
	}
	settings.environment = "dev"
	settings.obs_enabled = False
	settings.roster_poll_interval_seconds = 0.05
	settings.notification_refresh_seconds = 0.05
	settings.geo_fix_timeout_seconds = 0.5
	try:
		yield
	finally:
		for key, value in originals.items():
			setattr(settings, key, value)


@pytest.fixture
def feed() -> ChangeFeed:
	return ChangeFeed()


@pytest.fixture
def backend(feed) -> InMemoryBackend:
	return InMemoryBackend(feed)


class FakeClock:
	def __init__(self, start: float = 1000.0) -> None:
		self.now = start

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += seconds


class FakeGeolocationDevice:
	"""Scriptable stand-in for the device location API."""

	def __init__(self) -> None:
		self.fix: Position = Position(lat=45.5017, lng=-73.5673)
		self.error: Optional[Exception] = None
		self.gate: Optional[asyncio.Event] = None
		self.requests: List[Tuple[bool, float]] = []
		self.watches: Dict[int, Tuple[Callable, Callable]] = {}
		self.cleared: List[int] = []
		self._next_id = 1

	async def get_current_position(self, *, high_accuracy: bool, timeout: float) -> Position:
		self.requests.append((high_accuracy, timeout))
		if self.gate is not None:
			await self.gate.wait()
		if self.error is not None:
			raise self.error
		return self.fix

	def watch_position(self, on_position, on_error) -> int:
		watch_id = self._next_id
		self._next_id += 1
		self.watches[watch_id] = (on_position, on_error)
		return watch_id

	def clear_watch(self, watch_id: int) -> None:
		self.watches.pop(watch_id, None)
		self.cleared.append(watch_id)

	def emit(self, position: Position) -> None:
		for on_position, _ in list(self.watches.values()):
			on_position(position)

	def emit_error(self, exc: Exception) -> None:
		for _, on_error in list(self.watches.values()):
			on_error(exc)


@pytest.fixture
def device() -> FakeGeolocationDevice:
	return FakeGeolocationDevice()


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()
