"""Events emitted by the session orchestrator to UI collaborators."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from scriptor.generation.errors import GenerationError

logger = logging.getLogger(__name__)

EventKind = Literal["started", "resumed", "phase_changed", "completed", "failed"]


@dataclass(frozen=True)
class GenerationEvent:
  """Structured event describing a session transition."""

  kind: EventKind
  job_id: str | None
  phase: int | None = None
  result: Any = None
  error: GenerationError | None = None
  form_snapshot: dict[str, Any] | None = None
  timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

  def as_dict(self) -> dict[str, Any]:
    """Serialize the event for logging or persistence."""
    return {
      "kind": self.kind,
      "job_id": self.job_id,
      "phase": self.phase,
      "result": self.result,
      "error": self.error.as_dict() if self.error else None,
      "timestamp": self.timestamp.isoformat(),
    }


Listener = Callable[[GenerationEvent], None]


class EventEmitter:
  """Fan events out to subscribed listeners."""

  def __init__(self) -> None:
    self._listeners: list[Listener] = []

  def subscribe(self, listener: Listener) -> Callable[[], None]:
    """Register a listener and return a callable that removes it."""
    self._listeners.append(listener)

    def _unsubscribe() -> None:
      if listener in self._listeners:
        self._listeners.remove(listener)

    return _unsubscribe

  def emit(self, event: GenerationEvent) -> GenerationEvent:
    """Deliver an event; a failing listener is logged and skipped."""
    for listener in list(self._listeners):
      try:
        listener(event)
      except Exception:
        logger.exception("Listener %r failed on %s event", listener, event.kind)
    return event
