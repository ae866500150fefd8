"""Start a remote generation job and poll it until it reaches a terminal status."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import ValidationError

from scriptor.generation.classifier import classify_response, classify_transport, credit_error_from_body, is_credit_failure
from scriptor.generation.errors import CreditError, GenerationTimeoutError, ServerFailure
from scriptor.generation.models import GenerationMode, JobStatus
from scriptor.services.api_client import ScriptService
from scriptor.services.models import ErrorBody, StartJobResponse, StatusPayload

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], int]

START_FAILED_MESSAGE = "Failed to start script generation"
JOB_FAILED_MESSAGE = "Script generation failed on server"
MISSING_JOB_ID_MESSAGE = "No script ID received from server"
TIMED_OUT_MESSAGE = "Script generation timed out"


class JobPoller:
  """One-shot start call plus a bounded, fixed-interval status loop."""

  def __init__(self, service: ScriptService, *, sleep: Sleep = asyncio.sleep, clock: Clock | None = None, timeout_message: str = TIMED_OUT_MESSAGE) -> None:
    self._service = service
    self._sleep = sleep
    self._clock = clock
    self._timeout_message = timeout_message

  async def initiate(self, payload: dict[str, Any], mode: GenerationMode) -> str:
    """Start the job and return its id; every failure here is terminal."""

    try:
      response = await self._service.start_generation(payload, mode)
    except httpx.RequestError as exc:
      raise classify_transport(exc) from exc

    if not response.is_success:
      raise classify_response(response, default_message=START_FAILED_MESSAGE)

    try:
      body = response.json()
    except ValueError as exc:
      raise classify_transport(exc) from exc

    try:
      job_id = StartJobResponse.model_validate(body).job_id
    except ValidationError as exc:
      raise ServerFailure(MISSING_JOB_ID_MESSAGE, status_code=response.status_code) from exc

    logger.info("Received job id %s", job_id)
    return job_id

  async def check_status(self, job_id: str) -> JobStatus:
    """Fetch the job status once.

    Network hiccups and unusable bodies count as pending; only an explicit failed
    status is a failure, and only a credit error is raised.
    """

    try:
      response = await self._service.fetch_status(job_id)
    except httpx.RequestError as exc:
      logger.warning("Status check for %s failed, will retry: %s", job_id, classify_transport(exc))
      return JobStatus.pending()

    try:
      body = response.json()
    except ValueError:
      body = None

    if not response.is_success:
      error_body = ErrorBody.parse(body)
      if is_credit_failure(response.status_code, error_body):
        raise credit_error_from_body(response.status_code, error_body)
      logger.warning("Status check for %s returned %s, will retry", job_id, response.status_code)
      return JobStatus.pending()

    try:
      payload = StatusPayload.parse(body)
    except ValidationError:
      logger.warning("Status check for %s returned an unreadable body, will retry", job_id)
      return JobStatus.pending()

    if payload.status == "completed":
      return JobStatus.completed(payload.result)
    if payload.status == "failed":
      return JobStatus.failed(payload.failure_message or JOB_FAILED_MESSAGE)
    return JobStatus.pending()

  def _past_deadline(self, deadline_ms: int | None) -> bool:
    return deadline_ms is not None and self._clock is not None and self._clock() > deadline_ms

  async def poll_until_done(self, job_id: str, *, interval_seconds: float, max_attempts: int, initial_delay_seconds: float = 0.0, deadline_ms: int | None = None) -> JobStatus:
    """Poll until a terminal status, the attempt budget, or the deadline.

    Returns the terminal JobStatus. Raises CreditError immediately when a status
    check is refused for lack of credits, and GenerationTimeoutError when the
    budget is exhausted.
    """

    if initial_delay_seconds > 0:
      await self._sleep(initial_delay_seconds)

    attempts = 0
    while attempts < max_attempts:
      if self._past_deadline(deadline_ms):
        logger.info("Wall-clock deadline reached for %s after %s attempts", job_id, attempts)
        break

      attempts += 1
      logger.debug("Status check %s/%s for %s", attempts, max_attempts, job_id)
      try:
        status = await self.check_status(job_id)
      except CreditError:
        logger.warning("Credit error while polling %s; stopping", job_id)
        raise

      if status.is_terminal:
        return status

      if attempts < max_attempts:
        await self._sleep(interval_seconds)

    raise GenerationTimeoutError(self._timeout_message)
