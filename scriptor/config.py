"""Client configuration loaded from environment variables."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from scriptor.utils.env import default_env_path, load_env_file

ENV_PREFIX = "SCRIPTOR_"
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the script generation client."""

  api_base_url: str
  api_token: str | None
  request_timeout_seconds: float
  poll_interval_seconds: float
  initial_poll_delay_seconds: float
  generation_timeout_seconds: float
  progress_tick_seconds: float
  grounding: bool
  session_path: Path
  log_dir: Path
  log_level: str
  log_max_bytes: int
  log_backup_count: int

  @property
  def max_poll_attempts(self) -> int:
    """Attempt budget for a fresh session (60 with the defaults)."""

    return math.floor(self.generation_timeout_seconds / self.poll_interval_seconds)

  @property
  def log_level_value(self) -> int:
    return logging.getLevelName(self.log_level)


def _env(name: str, default: str | None = None) -> str | None:
  raw = os.getenv(f"{ENV_PREFIX}{name}")
  if raw is None or not raw.strip():
    return default
  return raw.strip()


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_float(name: str, default: str) -> float:
  raw = _env(name, default)
  try:
    value = float(raw)
  except (TypeError, ValueError) as exc:
    raise ValueError(f"{ENV_PREFIX}{name} must be a number.") from exc
  if value <= 0:
    raise ValueError(f"{ENV_PREFIX}{name} must be a positive number.")
  return value


def _non_negative_int(name: str, default: str) -> int:
  raw = _env(name, default)
  try:
    value = int(raw)
  except (TypeError, ValueError) as exc:
    raise ValueError(f"{ENV_PREFIX}{name} must be an integer.") from exc
  if value < 0:
    raise ValueError(f"{ENV_PREFIX}{name} must be zero or a positive integer.")
  return value


def load_settings() -> Settings:
  """Build settings from the current environment without caching."""

  api_base_url = _env("API_BASE_URL", "http://localhost:8080").rstrip("/")

  try:
    initial_poll_delay = float(_env("INITIAL_POLL_DELAY_SECONDS", "2"))
  except ValueError as exc:
    raise ValueError(f"{ENV_PREFIX}INITIAL_POLL_DELAY_SECONDS must be a number.") from exc
  if initial_poll_delay < 0:
    raise ValueError(f"{ENV_PREFIX}INITIAL_POLL_DELAY_SECONDS must be zero or a positive number.")

  log_level = _env("LOG_LEVEL", "INFO").upper()
  if log_level not in _LOG_LEVELS:
    raise ValueError(f"{ENV_PREFIX}LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}.")

  log_max_bytes = _non_negative_int("LOG_MAX_BYTES", "5242880")  # 5MB default
  if log_max_bytes == 0:
    raise ValueError(f"{ENV_PREFIX}LOG_MAX_BYTES must be a positive integer.")

  return Settings(
    api_base_url=api_base_url,
    api_token=_env("API_TOKEN"),
    request_timeout_seconds=_positive_float("REQUEST_TIMEOUT_SECONDS", "30"),
    poll_interval_seconds=_positive_float("POLL_INTERVAL_SECONDS", "5"),
    initial_poll_delay_seconds=initial_poll_delay,
    generation_timeout_seconds=_positive_float("GENERATION_TIMEOUT_SECONDS", "300"),
    progress_tick_seconds=_positive_float("PROGRESS_TICK_SECONDS", "2.5"),
    grounding=_parse_bool(_env("GROUNDING"), default=True),
    session_path=Path(_env("SESSION_PATH", ".scriptor/active_generation.json")),
    log_dir=Path(_env("LOG_DIR", "logs")),
    log_level=log_level,
    log_max_bytes=log_max_bytes,
    log_backup_count=_non_negative_int("LOG_BACKUP_COUNT", "10"),
  )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  load_env_file(default_env_path(), override=False)
  return load_settings()
