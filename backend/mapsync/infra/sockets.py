"""Socket.IO client that feeds ``row:change`` events from the realtime server into a ChangeFeed."""

from __future__ import annotations

import logging
from typing import Any, Optional

import socketio
from pydantic import ValidationError

from mapsync.infra.realtime import ChangeEvent, ChangeFeed
from mapsync.obs import metrics as obs_metrics
from mapsync.settings import settings

logger = logging.getLogger(__name__)

ROW_CHANGE_EVENT = "row:change"


class SocketChangeBridge:
	"""Connects to the realtime namespace and republishes validated row changes."""

	def __init__(
		self,
		feed: ChangeFeed,
		user_id: str,
		*,
		client: Optional[socketio.AsyncClient] = None,
		url: Optional[str] = None,
		namespace: Optional[str] = None,
	) -> None:
		self._feed = feed
		self.user_id = user_id
		self.url = url or settings.realtime_url
		self.namespace = namespace or settings.realtime_namespace
		self._client = client or socketio.AsyncClient(reconnection=True)
		self._client.on("connect", self._on_connect, namespace=self.namespace)
		self._client.on("disconnect", self._on_disconnect, namespace=self.namespace)
		self._client.on(ROW_CHANGE_EVENT, self._on_row_change, namespace=self.namespace)

	@property
	def connected(self) -> bool:
		return bool(self._client.connected)

	async def connect(self) -> None:
		auth: dict[str, Any] = {"userId": self.user_id}
		if settings.realtime_token:
			auth["token"] = settings.realtime_token
		await self._client.connect(self.url, namespaces=[self.namespace], auth=auth)

	async def disconnect(self) -> None:
		if self._client.connected:
			await self._client.disconnect()

	async def _on_connect(self) -> None:
		logger.info("realtime connected", extra={"namespace": self.namespace})

	async def _on_disconnect(self, *args: Any) -> None:
		logger.info("realtime disconnected", extra={"namespace": self.namespace})

	async def _on_row_change(self, payload: Any) -> None:
		self.handle_payload(payload)

	def handle_payload(self, payload: Any) -> bool:
		"""Validate one socket payload and publish it; returns False when rejected."""
		if not isinstance(payload, dict):
			obs_metrics.feed_reject("not_a_mapping")
			logger.warning("realtime payload rejected", extra={"error": type(payload).__name__})
			return False
		try:
			event = ChangeEvent.model_validate(payload)
		except ValidationError as exc:
			obs_metrics.feed_reject("invalid_payload")
			logger.warning("realtime payload rejected", extra={"error": str(exc.errors()[:1])})
			return False
		self._feed.publish(event)
		return True
