"""User-visible, non-blocking notices surfaced by the engine."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from mapsync.domain.common.timeutil import utcnow
from mapsync.settings import settings


class NoticeKind(str, Enum):
	TRANSIENT = "transient"
	PERSISTENT = "persistent"


@dataclass(frozen=True, slots=True)
class Notice:
	code: str
	message: str
	kind: NoticeKind = NoticeKind.TRANSIENT
	created_at: datetime = field(default_factory=utcnow)


Listener = Callable[[Notice], None]


class NoticeBoard:
	"""Keeps recent transient notices plus persistent prompts until dismissed."""

	def __init__(self, capacity: Optional[int] = None) -> None:
		self._recent: Deque[Notice] = deque(maxlen=capacity or settings.notice_history_size)
		self._persistent: Dict[str, Notice] = {}
		self._listeners: List[Listener] = []

	def post(self, code: str, message: str, kind: NoticeKind = NoticeKind.TRANSIENT) -> Notice:
		notice = Notice(code=code, message=message, kind=kind)
		self._recent.append(notice)
		if kind is NoticeKind.PERSISTENT:
			self._persistent[code] = notice
		for listener in list(self._listeners):
			listener(notice)
		return notice

	def dismiss(self, code: str) -> None:
		self._persistent.pop(code, None)

	def add_listener(self, listener: Listener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _remove() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _remove

	@property
	def recent(self) -> tuple[Notice, ...]:
		return tuple(self._recent)

	@property
	def persistent(self) -> tuple[Notice, ...]:
		return tuple(self._persistent.values())

	def latest(self) -> Optional[Notice]:
		return self._recent[-1] if self._recent else None

	def codes(self) -> List[str]:
		return [notice.code for notice in self._recent]
