"""Domain-level exceptions for pokes, friendships and blocks."""

from __future__ import annotations

from mapsync.infra.errors import SyncError


class SocialError(SyncError):
    """Base class for relationship feature errors."""

    reason: str = "social"


class SelfTargetError(SocialError):
    reason = "self_target"


class NotPendingError(SocialError):
    """Accept or decline on a pair with no incoming pending poke."""

    reason = "not_pending"
