"""Timestamp helpers shared by domain modules."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
	"""Coerce a backend timestamp (ISO string, epoch ms or datetime) to an aware datetime."""
	if value is None or value == "":
		return None
	if isinstance(value, datetime):
		return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
	if isinstance(value, (int, float)):
		return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
	if isinstance(value, str):
		text = value.strip()
		if text.endswith("Z"):
			text = text[:-1] + "+00:00"
		try:
			parsed = datetime.fromisoformat(text)
		except ValueError:
			return None
		return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
	return None
