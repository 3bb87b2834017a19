"""Settings for the map sync engine with observability configuration."""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
	if env_names:
		alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
		return Field(default=default, validation_alias=alias)
	return Field(default=default)


class Settings(BaseSettings):
	redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")
	realtime_url: str = _env_field("http://localhost:8000", "REALTIME_URL")
	realtime_namespace: str = _env_field("/realtime", "REALTIME_NAMESPACE")

	# Full roster re-fetch cadence; keeps timeouts and missed push events in check
	roster_poll_interval_seconds: float = _env_field(5.0, "ROSTER_POLL_INTERVAL_SECONDS")
	# Coarse badge re-derivation timer
	notification_refresh_seconds: float = _env_field(30.0, "NOTIFICATION_REFRESH_SECONDS")

	# Minimum gap between two remote position writes from the continuous watch
	geo_remote_write_min_interval_seconds: float = _env_field(5.0, "GEO_REMOTE_WRITE_MIN_INTERVAL_SECONDS")
	geo_fix_timeout_seconds: float = _env_field(5.0, "GEO_FIX_TIMEOUT_SECONDS")

	status_ttl_seconds: int = _env_field(3600, "STATUS_TTL_SECONDS")  # thoughts vanish after 1 hour
	story_ttl_seconds: int = _env_field(86400, "STORY_TTL_SECONDS")
	profile_cache_ttl_seconds: int = _env_field(30 * 86400, "PROFILE_CACHE_TTL_SECONDS")

	spiral_cluster_threshold_deg: float = _env_field(0.003, "SPIRAL_CLUSTER_THRESHOLD_DEG")
	spiral_base_spacing_deg: float = _env_field(0.0003, "SPIRAL_BASE_SPACING_DEG")

	notice_history_size: int = _env_field(50, "NOTICE_HISTORY_SIZE")

	environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
	obs_enabled: bool = _env_field(True, "OBS_ENABLED")
	obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
	obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")
	service_name: str = _env_field("mapsync", "SERVICE_NAME")
	git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")
	realtime_token: Optional[str] = _env_field(None, "REALTIME_TOKEN")

	model_config = SettingsConfigDict(
		env_prefix="",
		env_file=".env",
		case_sensitive=False,
		extra="ignore",
	)

	@field_validator("obs_log_sampling_rate_info")
	def _clamp_sampling(cls, value: float) -> float:
		return max(0.0, min(1.0, float(value)))

	@field_validator("roster_poll_interval_seconds", "notification_refresh_seconds")
	def _positive_interval(cls, value: float) -> float:
		if value <= 0:
			raise ValueError("interval must be positive")
		return value


settings = Settings()
