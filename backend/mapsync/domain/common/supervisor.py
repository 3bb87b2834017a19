"""Supervisor for background loops: failures degrade to a log line and a notice."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from mapsync.domain.common.notices import NoticeBoard
from mapsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Supervisor:
	"""Owns named background tasks and catches failures inside them."""

	def __init__(self, notices: Optional[NoticeBoard] = None) -> None:
		self._notices = notices
		self._tasks: Dict[str, asyncio.Task] = {}

	async def guard(
		self,
		name: str,
		call: Callable[[], Awaitable[T]],
		*,
		fallback: Optional[T] = None,
		notice: Optional[str] = None,
	) -> Optional[T]:
		"""Await ``call()``; on failure log it, post ``notice`` and return ``fallback``."""
		try:
			return await call()
		except asyncio.CancelledError:
			raise
		except Exception:
			obs_metrics.inc_supervised_failure(name)
			logger.exception("supervised task failed", extra={"task": name})
			if notice and self._notices is not None:
				self._notices.post(f"{name}_failed", notice)
			return fallback

	def spawn_periodic(
		self,
		name: str,
		interval: float,
		call: Callable[[], Awaitable[object]],
		*,
		run_immediately: bool = True,
	) -> asyncio.Task:
		"""Run ``call`` every ``interval`` seconds until cancelled."""
		self._cancel_existing(name)

		async def _loop() -> None:
			if not run_immediately:
				await asyncio.sleep(interval)
			while True:
				await self.guard(name, call)
				await asyncio.sleep(interval)

		task = asyncio.create_task(_loop(), name=f"mapsync:{name}")
		self._tasks[name] = task
		return task

	def spawn(self, name: str, call: Callable[[], Awaitable[object]]) -> asyncio.Task:
		"""Run ``call`` once in the background under :meth:`guard`."""
		self._cancel_existing(name)
		task = asyncio.create_task(self.guard(name, call), name=f"mapsync:{name}")
		self._tasks[name] = task
		return task

	def is_running(self, name: str) -> bool:
		task = self._tasks.get(name)
		return task is not None and not task.done()

	def _cancel_existing(self, name: str) -> None:
		task = self._tasks.pop(name, None)
		if task and not task.done():
			task.cancel()

	async def shutdown(self) -> None:
		"""Cancel every task and wait for them to unwind."""
		tasks = list(self._tasks.values())
		self._tasks.clear()
		for task in tasks:
			task.cancel()
		for task in tasks:
			with suppress(asyncio.CancelledError):
				await task
