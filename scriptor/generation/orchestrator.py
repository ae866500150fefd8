"""State machine that starts, tracks, resumes and finalizes one generation session.

States: idle -> initiating -> running -> {completed | failed | timed_out}, with the
alternate entry idle -> resuming -> running after a reload finds a live session.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from scriptor.config import Settings
from scriptor.generation.errors import CreditError, GenerationError, GenerationInProgressError, GenerationTimeoutError, ServerFailure
from scriptor.generation.events import EventEmitter, GenerationEvent, Listener
from scriptor.generation.models import GenerationMode, GenerationSession, JobStatus, SessionState
from scriptor.generation.poller import JobPoller, Sleep
from scriptor.generation.progress import ProgressEstimator
from scriptor.services.api_client import ScriptApiClient, ScriptService
from scriptor.storage.session_store import Clock, FileSessionStore, SessionStore, wall_clock_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")
ResumeConfirm = Callable[[GenerationSession], bool | Awaitable[bool]]


@dataclass(frozen=True)
class GenerationOutcome:
  """Final (or detached) result of one orchestrated session."""

  state: SessionState
  job_id: str | None
  result: Any = None
  error: GenerationError | None = None
  phase: int | None = None

  @property
  def succeeded(self) -> bool:
    return self.state == SessionState.COMPLETED

  @property
  def detached(self) -> bool:
    return not self.state.is_terminal


async def race_with_advisory(authoritative: Awaitable[T], advisory: Coroutine[Any, Any, None]) -> T:
  """Await `authoritative` while `advisory` runs alongside it.

  Only the authoritative side decides the result. The advisory task is cancelled
  as soon as the authoritative one settles; its own failures are logged.
  """
  main = asyncio.ensure_future(authoritative)
  side = asyncio.ensure_future(advisory)
  try:
    return await main
  finally:
    side.cancel()
    try:
      await side
    except asyncio.CancelledError:
      pass
    except Exception:
      logger.exception("Progress estimation failed")


class SessionOrchestrator:
  """Single writer of the session store and single emitter of terminal outcomes."""

  def __init__(
    self,
    *,
    poller: JobPoller,
    store: SessionStore,
    estimator: ProgressEstimator,
    clock: Clock = wall_clock_ms,
    poll_interval_seconds: float = 5.0,
    initial_poll_delay_seconds: float = 2.0,
    timeout_seconds: float = 300.0,
    emitter: EventEmitter | None = None,
  ) -> None:
    self._poller = poller
    self._store = store
    self._estimator = estimator
    self._clock = clock
    self._interval_ms = int(poll_interval_seconds * 1000)
    self._initial_delay_seconds = initial_poll_delay_seconds
    self._timeout_ms = int(timeout_seconds * 1000)
    self._emitter = emitter or EventEmitter()

    self._state = SessionState.IDLE
    self._job_id: str | None = None
    self._phase: int | None = None
    self._outcome: GenerationOutcome | None = None
    self._run_task: asyncio.Future[JobStatus] | None = None
    self._detached = False

  @classmethod
  def from_settings(cls, settings: Settings, *, service: ScriptService | None = None, store: SessionStore | None = None, sleep: Sleep = asyncio.sleep, clock: Clock = wall_clock_ms) -> SessionOrchestrator:
    """Wire the default collaborators from settings."""
    timeout_ms = int(settings.generation_timeout_seconds * 1000)
    service = service or ScriptApiClient(settings)
    store = store or FileSessionStore(settings.session_path, ttl_ms=timeout_ms, clock=clock)
    estimator = ProgressEstimator(tick_seconds=settings.progress_tick_seconds, timeout_ms=timeout_ms, sleep=sleep)
    poller = JobPoller(service, sleep=sleep, clock=clock)
    return cls(
      poller=poller,
      store=store,
      estimator=estimator,
      clock=clock,
      poll_interval_seconds=settings.poll_interval_seconds,
      initial_poll_delay_seconds=settings.initial_poll_delay_seconds,
      timeout_seconds=settings.generation_timeout_seconds,
    )

  @property
  def state(self) -> SessionState:
    return self._state

  @property
  def job_id(self) -> str | None:
    return self._job_id

  @property
  def phase(self) -> int | None:
    return self._phase

  @property
  def estimator(self) -> ProgressEstimator:
    return self._estimator

  @property
  def should_warn_on_leave(self) -> bool:
    """True while leaving the page would abandon an observed job."""
    return self._state.is_active

  @property
  def fresh_attempt_budget(self) -> int:
    return math.floor(self._timeout_ms / self._interval_ms)

  def remaining_attempts(self, elapsed_ms: int) -> int:
    """Attempts left for a resumed session; zero or less means it has run out of time."""
    return math.floor((self._timeout_ms - elapsed_ms) / self._interval_ms)

  def subscribe(self, listener: Listener) -> Callable[[], None]:
    return self._emitter.subscribe(listener)

  def _begin_episode(self, state: SessionState, job_id: str | None) -> None:
    self._state = state
    self._job_id = job_id
    self._phase = None
    self._outcome = None
    self._run_task = None
    self._detached = False

  def _ensure_idle(self) -> None:
    if self._state.is_active:
      raise GenerationInProgressError(f"Generation {self._job_id or '(starting)'} is already in progress.")

  def _advance_phase(self, index: int) -> None:
    # The phase shown to the user never moves backwards within one episode.
    if self._phase is not None and index <= self._phase:
      return
    self._phase = index
    logger.debug("Generation %s phase %s (%s)", self._job_id, index, self._estimator.phase(index).description)
    self._emitter.emit(GenerationEvent(kind="phase_changed", job_id=self._job_id, phase=index))

  def _finalize(self, state: SessionState, *, result: Any = None, error: GenerationError | None = None, clear_store: bool = True) -> GenerationOutcome:
    """Clear the store and emit the terminal event, at most once per episode."""
    if self._outcome is not None:
      return self._outcome

    if clear_store:
      self._store.clear()
    if state == SessionState.COMPLETED:
      self._advance_phase(self._estimator.final_index)

    self._state = state
    self._run_task = None
    outcome = GenerationOutcome(state=state, job_id=self._job_id, result=result, error=error, phase=self._phase)
    self._outcome = outcome

    if state == SessionState.COMPLETED:
      logger.info("Generation %s completed", self._job_id)
      self._emitter.emit(GenerationEvent(kind="completed", job_id=self._job_id, phase=self._phase, result=result))
    else:
      logger.warning("Generation %s ended %s: %s", self._job_id, state.value, error)
      self._emitter.emit(GenerationEvent(kind="failed", job_id=self._job_id, phase=self._phase, error=error))
    return outcome

  def _finalize_error(self, error: GenerationError, *, clear_store: bool = True) -> GenerationOutcome:
    state = SessionState.TIMED_OUT if isinstance(error, GenerationTimeoutError) else SessionState.FAILED
    return self._finalize(state, error=error, clear_store=clear_store)

  def _finalize_status(self, status: JobStatus) -> GenerationOutcome:
    if status.state == "completed":
      return self._finalize(SessionState.COMPLETED, result=status.result)
    return self._finalize_error(ServerFailure(status.reason or "Script generation failed"))

  async def start(self, payload: dict[str, Any], mode: GenerationMode = GenerationMode.DETAILED) -> GenerationOutcome:
    """Start a new job and observe it to a terminal outcome."""

    self._ensure_idle()
    if self._store.load() is not None:
      raise GenerationInProgressError("A stored generation session is still live; resume or dismiss it first.")

    self._begin_episode(SessionState.INITIATING, None)
    logger.info("Script generation started with mode %s", mode.value)
    try:
      job_id = await self._poller.initiate(payload, mode)
    except GenerationError as exc:
      # Nothing was persisted for a job that never started.
      return self._finalize_error(exc, clear_store=False)
    except BaseException:
      self._state = SessionState.IDLE
      raise

    session = GenerationSession(job_id=job_id, start_time_ms=self._clock(), mode=mode, form_snapshot=payload)
    self._job_id = job_id
    try:
      self._store.persist(session)
    except (OSError, TypeError, ValueError) as exc:
      # The job is already running remotely; keep observing it without resume support.
      logger.error("Failed to persist generation session %s: %s", job_id, exc)
    self._state = SessionState.RUNNING
    self._emitter.emit(GenerationEvent(kind="started", job_id=job_id, form_snapshot=payload))

    progress = self._estimator.run(self._advance_phase, self._is_settled)
    return await self._observe(session, max_attempts=self.fresh_attempt_budget, initial_delay_seconds=self._initial_delay_seconds, progress=progress)

  def find_resumable(self) -> GenerationSession | None:
    """Return the stored live session, if any, without acting on it."""
    if self._state.is_active:
      return None
    return self._store.load()

  async def try_resume(self, confirm: ResumeConfirm | None = None) -> GenerationOutcome | None:
    """On load, resume a stored live session; `confirm` may decline and discard it."""

    session = self.find_resumable()
    if session is None:
      return None

    if confirm is not None:
      decision = confirm(session)
      if inspect.isawaitable(decision):
        decision = await decision
      if not decision:
        logger.info("Resume of generation %s declined; discarding", session.job_id)
        self._store.clear()
        return None

    return await self.resume(session)

  async def resume(self, session: GenerationSession) -> GenerationOutcome:
    """Re-attach to a previously started job."""

    self._ensure_idle()
    self._begin_episode(SessionState.RESUMING, session.job_id)

    elapsed_ms = session.elapsed_ms(self._clock())
    estimated_phase = self._estimator.estimate_phase_from_elapsed(elapsed_ms)
    logger.info("Resuming generation %s after %sms at phase %s", session.job_id, elapsed_ms, estimated_phase)
    self._emitter.emit(GenerationEvent(kind="resumed", job_id=session.job_id, phase=estimated_phase, form_snapshot=session.form_snapshot))
    self._advance_phase(estimated_phase)

    try:
      status = await self._poller.check_status(session.job_id)
    except CreditError as exc:
      return self._finalize_error(exc)
    except BaseException:
      self._state = SessionState.IDLE
      raise
    if status.is_terminal:
      return self._finalize_status(status)

    max_attempts = self.remaining_attempts(elapsed_ms)
    if max_attempts <= 0:
      return self._finalize_error(GenerationTimeoutError("Script generation timed out"))

    self._state = SessionState.RUNNING
    progress = self._estimator.follow(lambda: session.elapsed_ms(self._clock()), self._advance_phase, self._is_settled)
    return await self._observe(session, max_attempts=max_attempts, initial_delay_seconds=self._interval_ms / 1000, progress=progress)

  def _is_settled(self) -> bool:
    return self._outcome is not None or self._detached

  async def _observe(self, session: GenerationSession, *, max_attempts: int, initial_delay_seconds: float, progress: Coroutine[Any, Any, None]) -> GenerationOutcome:
    """Run polling with progress estimation alongside and finalize the result."""

    if self._detached:
      progress.close()
      return self._stop_observing(session)

    poll = self._poller.poll_until_done(
      session.job_id,
      interval_seconds=self._interval_ms / 1000,
      max_attempts=max_attempts,
      initial_delay_seconds=initial_delay_seconds,
      deadline_ms=session.start_time_ms + self._timeout_ms,
    )
    self._run_task = asyncio.ensure_future(race_with_advisory(poll, progress))
    try:
      status = await self._run_task
    except asyncio.CancelledError:
      # Both are finished here unless the race was cancelled before it started.
      poll.close()
      progress.close()
      if not self._detached:
        self._state = SessionState.IDLE
        self._run_task = None
        raise
      return self._stop_observing(session)
    except GenerationError as exc:
      return self._finalize_error(exc)
    return self._finalize_status(status)

  def _stop_observing(self, session: GenerationSession) -> GenerationOutcome:
    # Stop observing only; the stored session lets a later load resume the job.
    logger.info("Stopped observing generation %s", session.job_id)
    self._state = SessionState.IDLE
    self._run_task = None
    return GenerationOutcome(state=SessionState.IDLE, job_id=session.job_id, phase=self._phase)

  def detach(self) -> bool:
    """Stop observing a live session without cancelling the remote job.

    While the job is still starting or the first resume check is in flight, the
    request is recorded and observation ends as soon as polling would begin. A
    terminal answer that arrives first is still finalized.
    """
    if not self._state.is_active or self._detached:
      return False
    self._detached = True
    if self._run_task is not None and not self._run_task.done():
      self._run_task.cancel()
    return True

  def dismiss(self) -> None:
    """Explicit user dismissal: forget the stored session."""
    if self._state.is_active:
      raise GenerationInProgressError("Detach from the running generation before dismissing it.")
    self._store.clear()
    logger.info("Stored generation session dismissed")
