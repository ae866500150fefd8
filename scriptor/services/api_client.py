"""HTTP client for the remote script generation service."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from scriptor.config import Settings
from scriptor.generation.models import GenerationMode

logger = logging.getLogger(__name__)

START_PATH = "/scripts/generate-script"
STATUS_PATH = "/scripts/get-generated-script"


class ScriptService(Protocol):
  """Remote calls the job poller depends on."""

  async def start_generation(self, payload: dict[str, Any], mode: GenerationMode) -> httpx.Response:
    """POST the form payload and return the raw response."""
    ...

  async def fetch_status(self, job_id: str) -> httpx.Response:
    """GET the job status and return the raw response."""
    ...


class ScriptApiClient(ScriptService):
  """httpx-backed client; raises httpx.RequestError on network failures and never on HTTP status."""

  def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self.settings = settings
    self._transport = transport
    self._client: httpx.AsyncClient | None = None

  def _headers(self) -> dict[str, str]:
    headers = {"accept": "application/json"}
    if self.settings.api_token:
      headers["authorization"] = f"Bearer {self.settings.api_token}"
    return headers

  def _build_client(self) -> httpx.AsyncClient:
    # Never trust environment proxy variables for the generation API.
    return httpx.AsyncClient(base_url=self.settings.api_base_url, headers=self._headers(), timeout=self.settings.request_timeout_seconds, transport=self._transport, trust_env=False)

  @property
  def client(self) -> httpx.AsyncClient:
    if self._client is None or self._client.is_closed:
      self._client = self._build_client()
    return self._client

  async def aclose(self) -> None:
    if self._client is not None:
      await self._client.aclose()
      self._client = None

  async def __aenter__(self) -> ScriptApiClient:
    return self

  async def __aexit__(self, *exc_info: object) -> None:
    await self.aclose()

  async def start_generation(self, payload: dict[str, Any], mode: GenerationMode) -> httpx.Response:
    params = {"mode": mode.value}
    if self.settings.grounding:
      params["grounding"] = "true"
    logger.info("Starting script generation mode=%s", mode.value)
    return await self.client.post(START_PATH, params=params, json=payload)

  async def fetch_status(self, job_id: str) -> httpx.Response:
    return await self.client.get(STATUS_PATH, params={"genScriptId": job_id})
