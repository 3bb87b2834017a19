"""Social domain exports."""

from .exceptions import NotPendingError, SelfTargetError, SocialError  # noqa: F401
from .models import (  # noqa: F401
	TEMP_ID_PREFIX,
	Relationship,
	RelationshipFields,
	RelationshipStatus,
)
