"""Domain models for in-flight script generation sessions."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


class GenerationMode(str, Enum):
  """Generation quality chosen by the user; carried through untouched."""

  FAST = "fast"
  MODERATE = "moderate"
  DETAILED = "detailed"


class SessionState(str, Enum):
  """Lifecycle states of the session orchestrator."""

  IDLE = "idle"
  INITIATING = "initiating"
  RESUMING = "resuming"
  RUNNING = "running"
  COMPLETED = "completed"
  FAILED = "failed"
  TIMED_OUT = "timed_out"

  @property
  def is_terminal(self) -> bool:
    return self in {SessionState.COMPLETED, SessionState.FAILED, SessionState.TIMED_OUT}

  @property
  def is_active(self) -> bool:
    return self in {SessionState.INITIATING, SessionState.RESUMING, SessionState.RUNNING}


@dataclass(frozen=True)
class GenerationSession:
  """The single persisted record tracking one remote job across reloads."""

  job_id: str
  start_time_ms: int
  mode: GenerationMode
  form_snapshot: dict[str, Any] = field(default_factory=dict, hash=False)

  def elapsed_ms(self, now_ms: int) -> int:
    return max(0, now_ms - self.start_time_ms)

  def to_record(self) -> dict[str, Any]:
    """Serialize to the stored JSON shape `{jobId, startTime, mode, formData}`."""

    return {"jobId": self.job_id, "startTime": self.start_time_ms, "mode": self.mode.value, "formData": self.form_snapshot}

  @classmethod
  def from_record(cls, record: Any) -> GenerationSession:
    """Parse a stored record, raising ValueError when it is malformed."""

    if not isinstance(record, dict):
      raise ValueError("Session record must be a JSON object.")
    job_id = record.get("jobId")
    if not isinstance(job_id, str) or not job_id:
      raise ValueError("Session record is missing jobId.")
    start_time = record.get("startTime")
    if isinstance(start_time, bool) or not isinstance(start_time, int | float):
      raise ValueError("Session record is missing a numeric startTime.")
    if not math.isfinite(start_time):
      raise ValueError("Session record startTime must be finite.")
    form_data = record.get("formData") or {}
    if not isinstance(form_data, dict):
      raise ValueError("Session record formData must be an object.")
    return cls(job_id=job_id, start_time_ms=int(start_time), mode=GenerationMode(record.get("mode")), form_snapshot=form_data)


@dataclass(frozen=True)
class Phase:
  """A named stage of the locally simulated progress display."""

  index: int
  name: str
  description: str
  estimated_duration_ms: int


JobState = Literal["pending", "completed", "failed"]


@dataclass(frozen=True)
class JobStatus:
  """Remote job status as last observed; `pending` is the only non-terminal value."""

  state: JobState
  result: Any = None
  reason: str | None = None

  @property
  def is_terminal(self) -> bool:
    return self.state != "pending"

  @classmethod
  def pending(cls) -> JobStatus:
    return cls(state="pending")

  @classmethod
  def completed(cls, result: Any = None) -> JobStatus:
    return cls(state="completed", result=result)

  @classmethod
  def failed(cls, reason: str) -> JobStatus:
    return cls(state="failed", reason=reason)
