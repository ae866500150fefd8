"""Pydantic models for the remote script service's JSON bodies."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"


class ErrorMessage(BaseModel):
  """Nested `{message}` form of the `error` field."""

  message: str | None = None
  model_config = ConfigDict(extra="ignore")


class CreditDetails(BaseModel):
  """Credit remediation details attached to an insufficient-credits error."""

  required: int | float | None = None
  available: int | float | None = None
  reserved: int | float | None = None
  estimation: dict[str, Any] | None = None
  model_config = ConfigDict(extra="ignore")

  @field_validator("required", "available", "reserved", mode="before")
  @classmethod
  def _coerce_number(cls, value: Any) -> Any:
    # Unparseable amounts fall back to the classifier defaults.
    if isinstance(value, bool):
      return None
    if isinstance(value, int | float):
      return value
    if isinstance(value, str):
      try:
        return float(value)
      except ValueError:
        return None
    return None

  @field_validator("estimation", mode="before")
  @classmethod
  def _coerce_estimation(cls, value: Any) -> Any:
    return value if isinstance(value, dict) else None


class ErrorBody(BaseModel):
  """Error body returned on any non-2xx response."""

  error: str | ErrorMessage | None = None
  code: str | None = None
  message: str | None = None
  details: CreditDetails | None = None
  model_config = ConfigDict(extra="ignore")

  @field_validator("error", "code", "message", mode="before")
  @classmethod
  def _drop_unexpected(cls, value: Any) -> Any:
    if value is None or isinstance(value, str | dict):
      return value
    return None

  @field_validator("details", mode="before")
  @classmethod
  def _details_object(cls, value: Any) -> Any:
    return value if isinstance(value, dict) else None

  @property
  def error_message(self) -> str | None:
    """First usable message: `error.message`, `error`, then `message`."""
    if isinstance(self.error, ErrorMessage) and self.error.message:
      return self.error.message
    if isinstance(self.error, str) and self.error:
      return self.error
    return self.message or None

  @property
  def is_credit_code(self) -> bool:
    return self.code == INSUFFICIENT_CREDITS

  @classmethod
  def parse(cls, body: Any) -> ErrorBody:
    """Parse any decoded JSON value; non-objects yield an empty body."""
    if not isinstance(body, dict):
      return cls()
    try:
      return cls.model_validate(body)
    except ValidationError:
      return cls()


class StartJobResponse(BaseModel):
  """Success body of the start call."""

  job_id: str = Field(min_length=1, validation_alias=AliasChoices("jobId", "genScriptId", "job_id"))
  model_config = ConfigDict(extra="ignore")


class StatusPayload(BaseModel):
  """Success body of the status call, `{status, result?}`."""

  status: Literal["pending", "processing", "completed", "failed"]
  result: Any = None
  error: str | ErrorMessage | None = None
  message: str | None = None
  model_config = ConfigDict(extra="allow")

  @field_validator("status", mode="before")
  @classmethod
  def _normalize_status(cls, value: Any) -> Any:
    # Unknown statuses are treated as still running.
    if isinstance(value, str):
      normalized = value.strip().lower()
      if normalized in {"pending", "processing", "completed", "failed"}:
        return normalized
    return "pending"

  @property
  def failure_message(self) -> str | None:
    if isinstance(self.error, ErrorMessage):
      return self.error.message
    return self.error or self.message

  @classmethod
  def parse(cls, body: Any) -> StatusPayload:
    """Accept the payload at top level or inside a `data` envelope.

    With an envelope and no explicit `result`, the envelope itself is the result.
    """
    if isinstance(body, dict) and isinstance(body.get("data"), dict) and "status" not in body:
      envelope = body["data"]
      payload = cls.model_validate(envelope)
      if payload.result is None:
        payload.result = envelope
      return payload
    return cls.model_validate(body)
