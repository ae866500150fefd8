from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from scriptor.generation.errors import CreditError, GenerationInProgressError, GenerationTimeoutError, ServerFailure, TransportError
from scriptor.generation.events import GenerationEvent
from scriptor.generation.models import GenerationMode, GenerationSession, SessionState
from scriptor.generation.orchestrator import SessionOrchestrator
from scriptor.generation.poller import JobPoller
from scriptor.generation.progress import ProgressEstimator
from tests.conftest import START_MS, FakeScriptService, RecordingStore, VirtualClock, json_response, status_response

CREDIT_BODY = {"error": "Insufficient credits", "code": "INSUFFICIENT_CREDITS", "details": {"required": 500, "available": 120}}


def build_orchestrator(service: FakeScriptService, store: RecordingStore, clock: VirtualClock) -> SessionOrchestrator:
  return SessionOrchestrator(
    poller=JobPoller(service, sleep=clock.sleep, clock=clock),
    store=store,
    estimator=ProgressEstimator(sleep=clock.sleep),
    clock=clock,
  )


def record_events(orchestrator: SessionOrchestrator) -> list[GenerationEvent]:
  events: list[GenerationEvent] = []
  orchestrator.subscribe(events.append)
  return events


def phases_of(events: list[GenerationEvent]) -> list[int]:
  return [event.phase for event in events if event.kind == "phase_changed"]


def seed_session(store: RecordingStore, clock: VirtualClock, *, age_ms: int, form: dict[str, Any] | None = None) -> GenerationSession:
  session = GenerationSession(job_id="job-old", start_time_ms=clock.now_ms - age_ms, mode=GenerationMode.MODERATE, form_snapshot=form or {"productName": "Glow"})
  store.persist(session)
  store.persisted.clear()
  return session


@pytest.mark.anyio
async def test_fresh_run_completes_on_third_poll(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = FakeScriptService(statuses=[status_response("pending"), status_response("processing"), status_response("completed", script="Hook. Body. CTA.")])
  orchestrator = build_orchestrator(service, store, clock)
  events = record_events(orchestrator)

  outcome = await orchestrator.start(form_payload, GenerationMode.DETAILED)

  assert outcome.succeeded
  assert outcome.job_id == "job-1"
  assert outcome.result == {"status": "completed", "script": "Hook. Body. CTA."}
  assert outcome.phase == 4
  assert orchestrator.state == SessionState.COMPLETED
  assert len(service.status_calls) == 3
  assert [session.job_id for session in store.persisted] == ["job-1"]
  assert store.persisted[0].start_time_ms == START_MS
  assert store.persisted[0].form_snapshot == form_payload
  assert store.clear_calls == 1
  assert store.load() is None

  phases = phases_of(events)
  assert phases == sorted(set(phases))
  assert phases[0] == 0 and phases[-1] == 4
  assert [event.kind for event in events if event.kind != "phase_changed"] == ["started", "completed"]


@pytest.mark.anyio
async def test_credit_error_on_second_poll_stops_polling(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = FakeScriptService(statuses=[status_response("pending"), json_response(402, CREDIT_BODY)])
  orchestrator = build_orchestrator(service, store, clock)

  outcome = await orchestrator.start(form_payload)

  assert orchestrator.state == SessionState.FAILED
  assert isinstance(outcome.error, CreditError)
  assert outcome.error.shortfall == 380
  assert outcome.error.percentage_available == 24
  assert len(service.status_calls) == 2
  assert store.clear_calls == 1


@pytest.mark.anyio
async def test_failed_status_ends_session(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = FakeScriptService(statuses=[status_response("pending"), status_response("pending"), status_response("failed")])
  orchestrator = build_orchestrator(service, store, clock)
  events = record_events(orchestrator)

  outcome = await orchestrator.start(form_payload)

  assert orchestrator.state == SessionState.FAILED
  assert isinstance(outcome.error, ServerFailure)
  assert outcome.error.message == "Script generation failed on server"
  assert len(service.status_calls) == 3
  assert events[-1].kind == "failed"
  assert store.clear_calls == 1


@pytest.mark.anyio
async def test_fresh_run_times_out_after_sixty_polls(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = FakeScriptService()
  orchestrator = build_orchestrator(service, store, clock)

  outcome = await orchestrator.start(form_payload)

  assert orchestrator.state == SessionState.TIMED_OUT
  assert isinstance(outcome.error, GenerationTimeoutError)
  assert len(service.status_calls) == 60
  assert store.clear_calls == 1


@pytest.mark.anyio
async def test_start_failure_persists_nothing(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = FakeScriptService(start=json_response(402, CREDIT_BODY, method="POST"))
  orchestrator = build_orchestrator(service, store, clock)
  events = record_events(orchestrator)

  outcome = await orchestrator.start(form_payload)

  assert orchestrator.state == SessionState.FAILED
  assert isinstance(outcome.error, CreditError)
  assert store.persisted == []
  assert service.status_calls == []
  assert [event.kind for event in events] == ["failed"]


@pytest.mark.anyio
async def test_missing_job_id_fails(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = FakeScriptService(start=json_response(200, {}, method="POST"))
  orchestrator = build_orchestrator(service, store, clock)

  outcome = await orchestrator.start(form_payload)

  assert outcome.error is not None
  assert outcome.error.message == "No script ID received from server"
  assert store.persisted == []


@pytest.mark.anyio
async def test_resume_after_sixty_seconds_uses_remaining_budget(clock: VirtualClock, store: RecordingStore) -> None:
  seed_session(store, clock, age_ms=60_000, form={"productName": "Glow", "tone": "playful"})
  service = FakeScriptService()
  orchestrator = build_orchestrator(service, store, clock)
  events = record_events(orchestrator)

  outcome = await orchestrator.try_resume(lambda session: True)

  assert outcome is not None
  assert outcome.state == SessionState.TIMED_OUT
  # One immediate check plus 48 polls for the remaining 240s.
  assert len(service.status_calls) == 49
  assert orchestrator.remaining_attempts(60_000) == 48
  assert store.clear_calls == 1

  resumed = events[0]
  assert resumed.kind == "resumed"
  assert resumed.phase == 1
  assert resumed.form_snapshot == {"productName": "Glow", "tone": "playful"}
  phases = phases_of(events)
  assert phases[0] == 1
  assert phases == sorted(set(phases))


@pytest.mark.anyio
async def test_resume_finishes_when_first_check_is_terminal(clock: VirtualClock, store: RecordingStore) -> None:
  seed_session(store, clock, age_ms=90_000)
  service = FakeScriptService(statuses=[status_response("completed", script="Done")])
  orchestrator = build_orchestrator(service, store, clock)
  events = record_events(orchestrator)

  outcome = await orchestrator.try_resume()

  assert outcome is not None
  assert outcome.succeeded
  assert outcome.phase == 4
  assert len(service.status_calls) == 1
  assert clock.sleeps == []
  assert [event.kind for event in events] == ["resumed", "phase_changed", "phase_changed", "completed"]
  assert store.clear_calls == 1


@pytest.mark.anyio
async def test_resume_with_no_time_left_times_out(clock: VirtualClock, store: RecordingStore) -> None:
  seed_session(store, clock, age_ms=299_000)
  service = FakeScriptService()
  orchestrator = build_orchestrator(service, store, clock)

  outcome = await orchestrator.try_resume()

  assert outcome is not None
  assert outcome.state == SessionState.TIMED_OUT
  assert len(service.status_calls) == 1
  assert store.clear_calls == 1


@pytest.mark.anyio
async def test_expired_session_is_not_resumed(clock: VirtualClock, store: RecordingStore) -> None:
  seed_session(store, clock, age_ms=300_000)
  service = FakeScriptService()
  orchestrator = build_orchestrator(service, store, clock)

  assert await orchestrator.try_resume() is None
  assert service.status_calls == []
  assert orchestrator.state == SessionState.IDLE


@pytest.mark.anyio
async def test_declined_resume_discards_session(clock: VirtualClock, store: RecordingStore) -> None:
  seed_session(store, clock, age_ms=10_000)
  service = FakeScriptService()
  orchestrator = build_orchestrator(service, store, clock)

  async def decline(session: GenerationSession) -> bool:
    return False

  assert await orchestrator.try_resume(decline) is None
  assert service.status_calls == []
  assert store.load() is None


@pytest.mark.anyio
async def test_resume_credit_error_on_immediate_check(clock: VirtualClock, store: RecordingStore) -> None:
  seed_session(store, clock, age_ms=30_000)
  service = FakeScriptService(statuses=[json_response(402, CREDIT_BODY)])
  orchestrator = build_orchestrator(service, store, clock)

  outcome = await orchestrator.try_resume()

  assert outcome is not None
  assert isinstance(outcome.error, CreditError)
  assert orchestrator.state == SessionState.FAILED
  assert store.clear_calls == 1


@pytest.mark.anyio
async def test_start_refuses_while_a_stored_session_is_live(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  seed_session(store, clock, age_ms=10_000)
  orchestrator = build_orchestrator(FakeScriptService(), store, clock)

  with pytest.raises(GenerationInProgressError):
    await orchestrator.start(form_payload)


@pytest.mark.anyio
async def test_detach_keeps_session_for_later_resume(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = FakeScriptService()
  orchestrator = build_orchestrator(service, store, clock)
  task = asyncio.ensure_future(orchestrator.start(form_payload))

  while not service.status_calls:
    await asyncio.sleep(0)
  assert orchestrator.detach()
  assert orchestrator.should_warn_on_leave
  outcome = await task

  assert outcome.detached
  assert orchestrator.state == SessionState.IDLE
  assert not orchestrator.should_warn_on_leave
  assert store.clear_calls == 0
  assert orchestrator.find_resumable() is not None

  service.statuses = [status_response("completed")]
  resumed = await orchestrator.try_resume()

  assert resumed is not None
  assert resumed.succeeded
  assert store.clear_calls == 1


@pytest.mark.anyio
async def test_second_start_while_running_is_rejected(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = FakeScriptService()
  orchestrator = build_orchestrator(service, store, clock)
  task = asyncio.ensure_future(orchestrator.start(form_payload))
  while not service.status_calls:
    await asyncio.sleep(0)

  with pytest.raises(GenerationInProgressError):
    await orchestrator.start(form_payload)

  orchestrator.detach()
  await task


def test_dismiss_clears_stored_session(clock: VirtualClock, store: RecordingStore) -> None:
  seed_session(store, clock, age_ms=10_000)
  orchestrator = build_orchestrator(FakeScriptService(), store, clock)

  orchestrator.dismiss()

  assert orchestrator.find_resumable() is None


@pytest.mark.anyio
async def test_failing_listener_does_not_break_the_session(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = FakeScriptService(statuses=[status_response("completed")])
  orchestrator = build_orchestrator(service, store, clock)

  def explode(event: GenerationEvent) -> None:
    raise RuntimeError("listener bug")

  orchestrator.subscribe(explode)
  outcome = await orchestrator.start(form_payload)

  assert outcome.succeeded


@pytest.mark.anyio
async def test_network_error_on_start_is_transport_failure(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = FakeScriptService(start=httpx.ConnectError("refused"))
  orchestrator = build_orchestrator(service, store, clock)

  outcome = await orchestrator.start(form_payload)

  assert isinstance(outcome.error, TransportError)
  assert orchestrator.state == SessionState.FAILED


@pytest.mark.anyio
async def test_first_completed_status_stops_polling(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = AsyncMock()
  service.start_generation.return_value = json_response(200, {"jobId": "42"}, method="POST")
  service.fetch_status.return_value = status_response("completed", result={"script": "Hook."})
  orchestrator = build_orchestrator(service, store, clock)

  outcome = await orchestrator.start(form_payload, GenerationMode.FAST)

  assert outcome.succeeded
  assert outcome.job_id == "42"
  assert outcome.result == {"script": "Hook."}
  service.start_generation.assert_awaited_once_with(form_payload, GenerationMode.FAST)
  service.fetch_status.assert_awaited_once_with("42")
  assert store.clear_calls == 1


class FailingPersistStore(RecordingStore):
  """Store whose writes fail, as on a full or read-only disk."""

  def persist(self, session: GenerationSession) -> None:
    raise OSError("disk full")


class GatedStartService(FakeScriptService):
  """Service whose start call waits until the test releases it."""

  def __init__(self, **kwargs: Any) -> None:
    super().__init__(**kwargs)
    self.release = asyncio.Event()

  async def start_generation(self, payload: dict[str, Any], mode: GenerationMode) -> httpx.Response:
    response = await super().start_generation(payload, mode)
    await self.release.wait()
    return response


@pytest.mark.anyio
async def test_persist_failure_keeps_observing_the_job(clock: VirtualClock, form_payload: dict[str, Any]) -> None:
  store = FailingPersistStore(clock=clock)
  service = FakeScriptService(statuses=[status_response("pending"), status_response("completed")])
  orchestrator = build_orchestrator(service, store, clock)

  outcome = await orchestrator.start(form_payload)

  assert outcome.succeeded
  assert len(service.status_calls) == 2
  assert store.clear_calls == 1
  assert not orchestrator.should_warn_on_leave

  service.statuses = [status_response("completed")]
  again = await orchestrator.start(form_payload)
  assert again.succeeded


@pytest.mark.anyio
async def test_unexpected_start_error_returns_to_idle(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = AsyncMock()
  service.start_generation.side_effect = RuntimeError("client closed")
  orchestrator = build_orchestrator(service, store, clock)

  with pytest.raises(RuntimeError):
    await orchestrator.start(form_payload)

  assert orchestrator.state == SessionState.IDLE
  assert not orchestrator.should_warn_on_leave


@pytest.mark.anyio
async def test_detach_while_starting_stops_before_polling(clock: VirtualClock, store: RecordingStore, form_payload: dict[str, Any]) -> None:
  service = GatedStartService()
  orchestrator = build_orchestrator(service, store, clock)
  task = asyncio.ensure_future(orchestrator.start(form_payload))
  while not service.start_calls:
    await asyncio.sleep(0)

  assert orchestrator.state == SessionState.INITIATING
  assert orchestrator.detach()
  assert not orchestrator.detach()
  service.release.set()
  outcome = await task

  assert outcome.detached
  assert outcome.job_id == "job-1"
  assert orchestrator.state == SessionState.IDLE
  assert service.status_calls == []
  assert orchestrator.find_resumable() is not None


def test_detach_when_idle_is_a_no_op(clock: VirtualClock, store: RecordingStore) -> None:
  orchestrator = build_orchestrator(FakeScriptService(), store, clock)

  assert not orchestrator.detach()
