"""Shared fixtures: a cooperative virtual clock and in-memory fakes."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from scriptor.generation.models import GenerationMode, GenerationSession
from scriptor.storage.session_store import InMemorySessionStore

START_MS = 1_700_000_000_000


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


class VirtualClock:
  """Fake time shared by every task of a test.

  A sleeping task only wakes once its wake-up time is the earliest pending one,
  so concurrent poll and progress loops interleave as they would in real time.
  """

  def __init__(self, start_ms: int = START_MS) -> None:
    self.now_ms = start_ms
    self.sleeps: list[float] = []
    self._waiters: list[int] = []

  def __call__(self) -> int:
    return self.now_ms

  def advance(self, ms: int) -> None:
    self.now_ms += ms

  async def sleep(self, seconds: float) -> None:
    self.sleeps.append(seconds)
    wake = self.now_ms + round(seconds * 1000)
    self._waiters.append(wake)
    try:
      while True:
        await asyncio.sleep(0)
        if wake == min(self._waiters):
          break
    finally:
      self._waiters.remove(wake)
    self.now_ms = max(self.now_ms, wake)


class RecordingStore(InMemorySessionStore):
  """In-memory store that counts writes and clears."""

  def __init__(self, **kwargs: Any) -> None:
    super().__init__(**kwargs)
    self.persisted: list[GenerationSession] = []
    self.clear_calls = 0

  def persist(self, session: GenerationSession) -> None:
    self.persisted.append(session)
    super().persist(session)

  def clear(self) -> None:
    self.clear_calls += 1
    super().clear()


def json_response(status_code: int, body: Any = None, *, method: str = "GET", path: str = "/") -> httpx.Response:
  request = httpx.Request(method, f"http://test{path}")
  if body is None:
    return httpx.Response(status_code, request=request)
  return httpx.Response(status_code, json=body, request=request)


def status_response(status: str, **extra: Any) -> httpx.Response:
  return json_response(200, {"data": {"status": status, **extra}})


class FakeScriptService:
  """Scripted stand-in for the remote service.

  `statuses` are replayed in order and the last one repeats; an exception
  instance is raised instead of returned.
  """

  def __init__(self, *, start: httpx.Response | Exception | None = None, statuses: list[httpx.Response | Exception] | None = None) -> None:
    self.start = start if start is not None else json_response(200, {"genScriptId": "job-1"}, method="POST")
    self.statuses = list(statuses or [status_response("pending")])
    self.start_calls: list[tuple[dict[str, Any], GenerationMode]] = []
    self.status_calls: list[str] = []

  async def start_generation(self, payload: dict[str, Any], mode: GenerationMode) -> httpx.Response:
    self.start_calls.append((payload, mode))
    if isinstance(self.start, Exception):
      raise self.start
    return self.start

  async def fetch_status(self, job_id: str) -> httpx.Response:
    self.status_calls.append(job_id)
    index = min(len(self.status_calls), len(self.statuses)) - 1
    outcome = self.statuses[index]
    if isinstance(outcome, Exception):
      raise outcome
    return outcome


@pytest.fixture
def clock() -> VirtualClock:
  return VirtualClock()


@pytest.fixture
def store(clock: VirtualClock) -> RecordingStore:
  return RecordingStore(clock=clock)


@pytest.fixture
def form_payload() -> dict[str, Any]:
  return {"productName": "Glow Serum", "platform": "tiktok", "duration": 30}
