"""Poke / friendship / block state machine with optimistic writes."""

from __future__ import annotations

import logging
from contextlib import suppress
from dataclasses import replace
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional

import ulid

from mapsync.domain.common.notices import NoticeBoard
from mapsync.domain.common.timeutil import utcnow
from mapsync.domain.roster.store import RosterStore
from mapsync.domain.social import policy
from mapsync.domain.social.commands import BlockEdit, RelationshipEdit
from mapsync.domain.social.exceptions import NotPendingError
from mapsync.domain.social.models import (
	MUTE_FIELD_RECEIVER,
	MUTE_FIELD_REQUESTER,
	TEMP_ID_PREFIX,
	Relationship,
	RelationshipFields,
	RelationshipStatus,
)
from mapsync.infra.backend import RelationshipBackend
from mapsync.infra.errors import ConflictViolation, StaleReference, SyncError
from mapsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_NONE = RelationshipFields.none()


class ActionOutcome(str, Enum):
	SENT = "sent"
	ACCEPTED = "accepted"
	DECLINED = "declined"
	CANCELLED = "cancelled"
	BLOCKED = "blocked"
	UNBLOCKED = "unblocked"
	MUTED = "muted"
	ALREADY_SENT = "already_sent"
	ALREADY_FRIENDS = "already_friends"
	ALREADY_REQUESTED = "already_requested"
	ALREADY_BLOCKED = "already_blocked"
	NOT_PENDING = "not_pending"
	NOT_BLOCKED = "not_blocked"
	NO_RELATIONSHIP = "no_relationship"
	IN_FLIGHT = "in_flight"
	FAILED = "failed"


_MESSAGES = {
	ActionOutcome.SENT: "Poke sent!",
	ActionOutcome.ACCEPTED: "You are now friends!",
	ActionOutcome.DECLINED: "Request declined",
	ActionOutcome.CANCELLED: "Poke cancelled",
	ActionOutcome.BLOCKED: "User blocked",
	ActionOutcome.UNBLOCKED: "User unblocked",
	ActionOutcome.MUTED: "Notifications muted",
	ActionOutcome.ALREADY_SENT: "Poke already sent",
	ActionOutcome.ALREADY_FRIENDS: "You are already friends!",
	ActionOutcome.ALREADY_REQUESTED: "Already requested",
	ActionOutcome.ALREADY_BLOCKED: "User already blocked",
	ActionOutcome.NOT_PENDING: "No pending request from this user",
	ActionOutcome.NOT_BLOCKED: "User is not blocked",
	ActionOutcome.NO_RELATIONSHIP: "You are not connected with this user",
	ActionOutcome.IN_FLIGHT: "Still sending, try again in a moment",
}

_FAILURE_MESSAGES = {
	"poke": "Failed to send poke",
	"accept": "Failed to accept request",
	"decline": "Failed to decline request",
	"cancel": "Failed to cancel poke",
	"block": "Failed to block user",
	"unblock": "Failed to unblock user",
	"mute": "Failed to mute user",
}


def _temp_id() -> str:
	return f"{TEMP_ID_PREFIX}{ulid.new()}"


class RelationshipMachine:
	"""Runs relationship actions for the local user against one counterpart at a time.

	Decisions are taken from the relationship fields the roster currently holds. Every
	write is preceded by an optimistic command and rolled back when the backend call
	fails; remote transitions arrive through the roster's relationship events.
	"""

	def __init__(
		self,
		store: RosterStore,
		backend: RelationshipBackend,
		notices: NoticeBoard,
		*,
		id_factory: Callable[[], str] = _temp_id,
	) -> None:
		self._store = store
		self._backend = backend
		self._notices = notices
		self._id_factory = id_factory

	@property
	def self_id(self) -> str:
		return self._store.self_id

	def _finish(self, action: str, outcome: ActionOutcome) -> ActionOutcome:
		obs_metrics.inc_relationship_action(action, outcome.value)
		message = _MESSAGES.get(outcome)
		if message:
			self._notices.post(outcome.value, message)
		return outcome

	def _fail(self, action: str, exc: SyncError) -> ActionOutcome:
		logger.warning(
			"relationship action failed",
			extra={"action": action, "reason": exc.reason},
		)
		obs_metrics.inc_relationship_action(action, ActionOutcome.FAILED.value)
		self._notices.post(f"{action}_failed", _FAILURE_MESSAGES[action])
		return ActionOutcome.FAILED

	# --- poke ---------------------------------------------------------------

	async def poke(self, target_id: str) -> ActionOutcome:
		policy.guard_not_self(self.self_id, target_id)
		current = self._store.relationship_for(target_id)
		if current.status is RelationshipStatus.ACCEPTED:
			obs_metrics.inc_poke("already_friends")
			return self._finish("poke", ActionOutcome.ALREADY_FRIENDS)
		if current.status is RelationshipStatus.PENDING:
			if current.is_outgoing(self.self_id):
				obs_metrics.inc_poke("already_sent")
				return self._finish("poke", ActionOutcome.ALREADY_SENT)
			if current.is_temporary:
				return self._finish("poke", ActionOutcome.IN_FLIGHT)
			obs_metrics.inc_poke("implicit_accept")
			return await self._accept(target_id, current, action="poke")

		temp_id = self._id_factory()
		command = RelationshipEdit(
			self._store,
			target_id,
			RelationshipFields(RelationshipStatus.PENDING, self.self_id, temp_id),
			name="poke",
		)
		prior = command.apply()
		try:
			if current.relationship_id and not current.is_temporary:
				# declined or blocked rows are reset before a fresh request
				with suppress(StaleReference):
					await self._backend.delete_relationship(current.relationship_id)
			row = await self._backend.insert_relationship(
				self.self_id,
				target_id,
				RelationshipStatus.PENDING.value,
			)
		except ConflictViolation:
			return await self._resolve_conflict(target_id, command, prior)
		except SyncError as exc:
			command.rollback(prior)
			obs_metrics.inc_poke("failed")
			return self._fail("poke", exc)
		self._confirm(target_id, temp_id, Relationship.from_record(row))
		obs_metrics.inc_poke("sent")
		return self._finish("poke", ActionOutcome.SENT)

	def _confirm(self, target_id: str, temp_id: str, relationship: Relationship) -> None:
		current = self._store.relationship_for(target_id)
		if current.relationship_id == temp_id:
			self._store.set_relationship(target_id, relationship.fields())
		elif current.relationship_id == relationship.id:
			return
		else:
			# a push already moved the pair on; keep it but learn the id for later deletes
			self._store.remember_relationship_id(relationship.id, target_id)

	async def _resolve_conflict(
		self,
		target_id: str,
		command: RelationshipEdit,
		prior: RelationshipFields,
	) -> ActionOutcome:
		try:
			row = await self._backend.find_relationship(self.self_id, target_id)
		except SyncError as exc:
			command.rollback(prior)
			return self._fail("poke", exc)
		if row is None:
			command.rollback(prior)
			return self._fail("poke", StaleReference())
		existing = Relationship.from_record(row)
		self._store.set_relationship(target_id, existing.fields())
		if existing.status is RelationshipStatus.PENDING and existing.requester_id == target_id:
			obs_metrics.inc_poke("implicit_accept")
			return await self._accept(target_id, existing.fields(), action="poke")
		obs_metrics.inc_poke("conflict")
		return self._finish("poke", ActionOutcome.ALREADY_REQUESTED)

	# --- incoming requests ---------------------------------------------------

	async def _accept(self, target_id: str, current: RelationshipFields, *, action: str) -> ActionOutcome:
		command = RelationshipEdit(
			self._store,
			target_id,
			replace(current, status=RelationshipStatus.ACCEPTED),
			name=action,
		)
		prior = command.apply()
		try:
			await self._backend.update_relationship(
				current.relationship_id,
				{"status": RelationshipStatus.ACCEPTED.value},
			)
		except SyncError as exc:
			command.rollback(prior)
			return self._fail(action, exc)
		return self._finish(action, ActionOutcome.ACCEPTED)

	async def accept(self, target_id: str) -> ActionOutcome:
		policy.guard_not_self(self.self_id, target_id)
		current = self._store.relationship_for(target_id)
		try:
			policy.guard_incoming_pending(self.self_id, current)
		except NotPendingError:
			return self._finish("accept", ActionOutcome.NOT_PENDING)
		return await self._accept(target_id, current, action="accept")

	async def decline(self, target_id: str) -> ActionOutcome:
		policy.guard_not_self(self.self_id, target_id)
		current = self._store.relationship_for(target_id)
		try:
			policy.guard_incoming_pending(self.self_id, current)
		except NotPendingError:
			return self._finish("decline", ActionOutcome.NOT_PENDING)
		command = RelationshipEdit(
			self._store,
			target_id,
			replace(current, status=RelationshipStatus.DECLINED),
			name="decline",
		)
		prior = command.apply()
		try:
			await self._backend.update_relationship(
				current.relationship_id,
				{"status": RelationshipStatus.DECLINED.value},
			)
		except SyncError as exc:
			command.rollback(prior)
			return self._fail("decline", exc)
		return self._finish("decline", ActionOutcome.DECLINED)

	# --- cancel ---------------------------------------------------------------

	async def cancel(self, target_id: str) -> ActionOutcome:
		policy.guard_not_self(self.self_id, target_id)
		current = self._store.relationship_for(target_id)
		if current.status is not RelationshipStatus.PENDING or not current.is_outgoing(self.self_id):
			return self._finish("cancel", ActionOutcome.NO_RELATIONSHIP)
		if current.is_temporary:
			return self._finish("cancel", ActionOutcome.IN_FLIGHT)
		command = RelationshipEdit(self._store, target_id, _NONE, name="cancel")
		prior = command.apply()
		try:
			await self._backend.delete_relationship(current.relationship_id)
		except SyncError as exc:
			command.rollback(prior)
			return self._fail("cancel", exc)
		return self._finish("cancel", ActionOutcome.CANCELLED)

	# --- blocks ---------------------------------------------------------------

	async def block(self, target_id: str) -> ActionOutcome:
		policy.guard_not_self(self.self_id, target_id)
		current = self._store.relationship_for(target_id)
		command = BlockEdit(self._store, target_id, blocked=True)
		prior = command.apply()
		try:
			await self._backend.insert_block(self.self_id, target_id)
			outcome = ActionOutcome.BLOCKED
		except ConflictViolation:
			outcome = ActionOutcome.ALREADY_BLOCKED
		except SyncError as exc:
			command.rollback(prior)
			return self._fail("block", exc)
		obs_metrics.inc_block(outcome.value)
		await self._drop_relationship_row(target_id, current)
		return self._finish("block", outcome)

	async def _drop_relationship_row(self, target_id: str, current: RelationshipFields) -> None:
		relationship_id: Optional[str] = current.relationship_id
		try:
			if not relationship_id or current.is_temporary:
				row = await self._backend.find_relationship(self.self_id, target_id)
				relationship_id = str(row["id"]) if row else None
			self._store.set_relationship(target_id, _NONE)
			if relationship_id:
				await self._backend.delete_relationship(relationship_id)
		except StaleReference:
			return
		except SyncError as exc:
			# the block itself stands; the next poll cycle reports the leftover row
			logger.warning(
				"relationship cleanup after block failed",
				extra={"reason": exc.reason},
			)

	async def unblock(self, target_id: str) -> ActionOutcome:
		policy.guard_not_self(self.self_id, target_id)
		if target_id not in self._store.blocked:
			return self._finish("unblock", ActionOutcome.NOT_BLOCKED)
		command = BlockEdit(self._store, target_id, blocked=False)
		prior = command.apply()
		try:
			await self._backend.delete_block(self.self_id, target_id)
		except SyncError as exc:
			command.rollback(prior)
			return self._fail("unblock", exc)
		obs_metrics.inc_block("unblocked")
		return self._finish("unblock", ActionOutcome.UNBLOCKED)

	# --- mute -------------------------------------------------------------------

	async def mute(self, target_id: str, seconds: float) -> ActionOutcome:
		"""Set the local party's mute-until timestamp on the relationship row."""
		policy.guard_not_self(self.self_id, target_id)
		current = self._store.relationship_for(target_id)
		if current.is_none or not current.relationship_id or current.is_temporary:
			return self._finish("mute", ActionOutcome.NO_RELATIONSHIP)
		field = MUTE_FIELD_REQUESTER if current.is_outgoing(self.self_id) else MUTE_FIELD_RECEIVER
		until = utcnow() + timedelta(seconds=seconds)
		try:
			await self._backend.update_relationship(current.relationship_id, {field: until.isoformat()})
		except SyncError as exc:
			return self._fail("mute", exc)
		return self._finish("mute", ActionOutcome.MUTED)
