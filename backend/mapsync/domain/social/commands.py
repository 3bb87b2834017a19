"""Optimistic roster edits with an explicit apply/rollback pair.

``apply()`` runs synchronously before the backend request and returns the prior value
of exactly the fields it touches; ``rollback(prior)`` puts that value back verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from mapsync.domain.roster.models import Entity
from mapsync.domain.roster.store import RosterStore
from mapsync.domain.social.models import RelationshipFields
from mapsync.obs import metrics as obs_metrics

P = TypeVar("P")


class OptimisticCommand(Generic[P]):
	name: str = "command"

	def apply(self) -> P:
		raise NotImplementedError

	def rollback(self, prior: P) -> None:
		raise NotImplementedError


class RelationshipEdit(OptimisticCommand[RelationshipFields]):
	"""Overwrite the relationship fields held for one counterpart."""

	def __init__(self, store: RosterStore, counterpart_id: str, fields: RelationshipFields, *, name: str) -> None:
		self._store = store
		self._counterpart_id = counterpart_id
		self._fields = fields
		self.name = name

	def apply(self) -> RelationshipFields:
		prior = self._store.relationship_for(self._counterpart_id)
		# dropping the old id from the owner cache happens here, before any request is sent
		self._store.set_relationship(self._counterpart_id, self._fields)
		return prior

	def rollback(self, prior: RelationshipFields) -> None:
		obs_metrics.inc_rollback(self.name)
		self._store.set_relationship(self._counterpart_id, prior)


@dataclass(frozen=True, slots=True)
class BlockPrior:
	was_blocked: bool
	entity: Optional[Entity]


class BlockEdit(OptimisticCommand[BlockPrior]):
	"""Add a user to (or lift them from) the local blocked set."""

	def __init__(self, store: RosterStore, target_id: str, *, blocked: bool = True) -> None:
		self._store = store
		self._target_id = target_id
		self._blocked = blocked
		self.name = "block" if blocked else "unblock"

	def apply(self) -> BlockPrior:
		prior = BlockPrior(
			was_blocked=self._target_id in self._store.blocked,
			entity=self._store.get(self._target_id),
		)
		if self._blocked:
			self._store.block_locally(self._target_id)
		else:
			self._store.unblock_locally(self._target_id)
		return prior

	def rollback(self, prior: BlockPrior) -> None:
		obs_metrics.inc_rollback(self.name)
		if prior.was_blocked:
			self._store.block_locally(self._target_id)
		else:
			self._store.unblock_locally(self._target_id)
		if prior.entity is not None:
			self._store.restore_entity(prior.entity)
