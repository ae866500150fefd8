"""Durable single-slot storage for the in-flight generation session."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from scriptor.generation.models import GenerationSession

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
DEFAULT_SESSION_TTL_MS = 5 * 60 * 1000


def wall_clock_ms() -> int:
  """Epoch milliseconds; session start times must survive process restarts."""
  return int(time.time() * 1000)


class SessionStore(Protocol):
  """Storage contract for the single persisted session slot."""

  def persist(self, session: GenerationSession) -> None:
    """Write the slot, overwriting any prior value."""

  def load(self) -> GenerationSession | None:
    """Return the live session, or None when absent, expired or corrupt."""

  def clear(self) -> None:
    """Remove the slot; removing an empty slot is a no-op."""


class _SlotStore:
  """Expiry-aware load shared by the concrete backends."""

  def __init__(self, *, ttl_ms: int = DEFAULT_SESSION_TTL_MS, clock: Clock = wall_clock_ms) -> None:
    self._ttl_ms = ttl_ms
    self._clock = clock

  def _read_raw(self) -> Any:
    raise NotImplementedError

  def clear(self) -> None:
    raise NotImplementedError

  def load(self) -> GenerationSession | None:
    try:
      raw = self._read_raw()
    except (OSError, ValueError) as exc:
      logger.warning("Discarding unreadable generation session record: %s", exc)
      self.clear()
      return None
    if raw is None:
      return None

    try:
      session = GenerationSession.from_record(raw)
    except (ValueError, OverflowError) as exc:
      logger.warning("Discarding corrupt generation session record: %s", exc)
      self.clear()
      return None

    # Expiry is only enforced when someone reads the slot.
    elapsed = self._clock() - session.start_time_ms
    if elapsed >= self._ttl_ms:
      logger.info("Generation session %s expired after %sms", session.job_id, elapsed)
      self.clear()
      return None
    return session


class InMemorySessionStore(_SlotStore):
  """Process-local backend holding the serialized record."""

  def __init__(self, *, ttl_ms: int = DEFAULT_SESSION_TTL_MS, clock: Clock = wall_clock_ms) -> None:
    super().__init__(ttl_ms=ttl_ms, clock=clock)
    self._payload: str | None = None

  def persist(self, session: GenerationSession) -> None:
    self._payload = json.dumps(session.to_record())

  def _read_raw(self) -> Any:
    if self._payload is None:
      return None
    return json.loads(self._payload)

  def clear(self) -> None:
    self._payload = None


class FileSessionStore(_SlotStore):
  """JSON file backend; the record survives a crash or restart of the client."""

  def __init__(self, path: Path, *, ttl_ms: int = DEFAULT_SESSION_TTL_MS, clock: Clock = wall_clock_ms) -> None:
    super().__init__(ttl_ms=ttl_ms, clock=clock)
    self.path = Path(path)

  def persist(self, session: GenerationSession) -> None:
    self.path.parent.mkdir(parents=True, exist_ok=True)
    # Write to a sibling temp file and swap so readers never see a partial record.
    fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
    try:
      with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(session.to_record(), handle, ensure_ascii=False)
      os.replace(tmp_name, self.path)
    except BaseException:
      Path(tmp_name).unlink(missing_ok=True)
      raise

  def _read_raw(self) -> Any:
    if not self.path.is_file():
      return None
    text = self.path.read_text(encoding="utf-8")
    if not text.strip():
      raise ValueError("empty session file")
    return json.loads(text)

  def clear(self) -> None:
    try:
      self.path.unlink(missing_ok=True)
    except OSError as exc:
      logger.error("Failed to clear generation session at %s: %s", self.path, exc)
