"""Locally simulated progress phases for a running generation.

The remote service does not report incremental progress, so the phase shown to
the user is an estimate: fresh runs walk a fixed duration table, resumed runs
derive the phase from elapsed wall-clock time.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Sequence

from scriptor.generation.models import Phase

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
PhaseCallback = Callable[[int], None]
DoneCheck = Callable[[], bool]

DEFAULT_PHASES: tuple[Phase, ...] = (
  Phase(index=0, name="init", description="Initializing", estimated_duration_ms=5_000),
  Phase(index=1, name="analyze", description="Analyzing Context", estimated_duration_ms=30_000),
  Phase(index=2, name="evaluate", description="Evaluating Concepts", estimated_duration_ms=24_000),
  Phase(index=3, name="draft", description="Drafting Script", estimated_duration_ms=30_000),
  Phase(index=4, name="qa", description="Running QA Checks", estimated_duration_ms=16_000),
)
DEFAULT_TICK_SECONDS = 2.5
DEFAULT_TIMEOUT_MS = 5 * 60 * 1000
# Resumed estimates never claim more than 95% of the timeout has been used up.
RESUME_PROGRESS_CAP = 0.95


def _validate_phases(phases: Sequence[Phase]) -> tuple[Phase, ...]:
  if not phases:
    raise ValueError("At least one progress phase is required.")
  for position, phase in enumerate(phases):
    if phase.index != position:
      raise ValueError(f"Phase {phase.name!r} has index {phase.index}, expected {position}.")
    if phase.estimated_duration_ms < 0:
      raise ValueError(f"Phase {phase.name!r} has a negative duration.")
  return tuple(phases)


class ProgressEstimator:
  """Drive a cosmetic phase signal; never decides success or failure."""

  def __init__(self, phases: Sequence[Phase] = DEFAULT_PHASES, *, tick_seconds: float = DEFAULT_TICK_SECONDS, timeout_ms: int = DEFAULT_TIMEOUT_MS, sleep: Sleep = asyncio.sleep) -> None:
    if tick_seconds <= 0:
      raise ValueError("tick_seconds must be positive.")
    if timeout_ms <= 0:
      raise ValueError("timeout_ms must be positive.")
    self._phases = _validate_phases(phases)
    self._tick_ms = int(tick_seconds * 1000)
    self._timeout_ms = timeout_ms
    self._sleep = sleep

  @property
  def phases(self) -> tuple[Phase, ...]:
    return self._phases

  @property
  def final_index(self) -> int:
    return len(self._phases) - 1

  @property
  def total_duration_ms(self) -> int:
    return sum(phase.estimated_duration_ms for phase in self._phases)

  def phase(self, index: int) -> Phase:
    return self._phases[index]

  async def run(self, on_phase_change: PhaseCallback, is_done: DoneCheck) -> None:
    """Walk the phase table, sleeping in ticks so completion is noticed quickly."""

    for phase in self._phases:
      if is_done():
        return
      on_phase_change(phase.index)
      logger.debug("Progress: %s", phase.description)

      remaining_ms = phase.estimated_duration_ms
      while remaining_ms > 0 and not is_done():
        step_ms = min(self._tick_ms, remaining_ms)
        await self._sleep(step_ms / 1000)
        remaining_ms -= step_ms

  def estimate_phase_from_elapsed(self, elapsed_ms: int) -> int:
    """Coarse phase for a resumed session, from elapsed time against the timeout."""

    fraction = min(max(elapsed_ms, 0) / self._timeout_ms, RESUME_PROGRESS_CAP)
    return min(math.floor(fraction * len(self._phases)), self.final_index)

  async def follow(self, elapsed_ms: Callable[[], int], on_phase_change: PhaseCallback, is_done: DoneCheck) -> None:
    """Re-estimate the phase every tick for a resumed session until done."""

    last_index: int | None = None
    while not is_done():
      index = self.estimate_phase_from_elapsed(elapsed_ms())
      if index != last_index:
        on_phase_change(index)
        last_index = index
      await self._sleep(self._tick_ms / 1000)
