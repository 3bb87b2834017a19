"""Roster domain exports."""

from .models import BlockedSet, Entity, RosterState
from .store import RosterStore
from .sync import RosterSync

__all__ = ["BlockedSet", "Entity", "RosterState", "RosterStore", "RosterSync"]
