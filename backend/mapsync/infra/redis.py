"""Redis connection management.

Provides a stable proxy object so imports like `from mapsync.infra.redis import redis_client`
always reference the same proxy instance. The underlying client can be swapped at
runtime (e.g., to fakeredis in tests) without breaking previously imported references.
"""

from __future__ import annotations

from typing import Any, Mapping

import redis.asyncio as redis
from redis.exceptions import RedisError

from mapsync.settings import settings

# Failures of the cache connection itself; builtin ConnectionError is an OSError
CACHE_ERRORS = (RedisError, OSError)


class RedisProxy:
	"""Lightweight proxy that forwards attribute access to an underlying Redis client."""

	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	async def hset_with_ttl(self, name: str, mapping: Mapping[str, Any], ttl_seconds: int) -> None:
		"""Write a hash and refresh its TTL atomically; None values are stored as empty strings."""
		flat = {key: "" if value is None else value for key, value in mapping.items()}
		async with self._client.pipeline(transaction=True) as pipe:
			pipe.hset(name, mapping=flat)
			pipe.expire(name, ttl_seconds)
			await pipe.execute()

	# Fallback: delegate everything else to the underlying client
	def __getattr__(self, item):
		return getattr(self._client, item)


_real_client = redis.from_url(settings.redis_url, decode_responses=True)
redis_client: RedisProxy = RedisProxy(_real_client)


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)
