"""Error taxonomy for script generation sessions."""

from __future__ import annotations

from typing import Any, ClassVar, Literal

ErrorKind = Literal["transport", "server_failure", "credit", "timeout"]


class GenerationError(RuntimeError):
  """Base class for every terminal or transient generation failure."""

  kind: ClassVar[ErrorKind]

  def __init__(self, message: str) -> None:
    super().__init__(message)
    self.message = message

  def as_dict(self) -> dict[str, Any]:
    """Serialize the error for events, logs and the CLI."""
    return {"kind": self.kind, "message": self.message}


class TransportError(GenerationError):
  """Network failure or unparseable response body; no usable HTTP answer."""

  kind = "transport"


class ServerFailure(GenerationError):
  """Explicit failed job status, or a non-2xx response that is not a credit error."""

  kind = "server_failure"

  def __init__(self, message: str, *, status_code: int | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code

  def as_dict(self) -> dict[str, Any]:
    return {**super().as_dict(), "status_code": self.status_code}


class CreditError(GenerationError):
  """The account lacks the credits the job needs; drives the purchase-credits path."""

  kind = "credit"

  def __init__(
    self,
    message: str,
    *,
    required: float,
    available: float,
    shortfall: float,
    percentage_available: int,
    code: str,
    status_code: int | None = None,
    reserved: float | None = None,
    estimation: dict[str, Any] | None = None,
  ) -> None:
    super().__init__(message)
    self.required = required
    self.available = available
    self.shortfall = shortfall
    self.percentage_available = percentage_available
    self.code = code
    self.status_code = status_code
    self.reserved = reserved
    self.estimation = estimation

  @property
  def suggestion(self) -> str:
    if self.shortfall > 0:
      return f"Purchase {_format_amount(self.shortfall)} credits to continue with this operation."
    return "Please purchase additional credits to continue."

  def as_dict(self) -> dict[str, Any]:
    return {
      **super().as_dict(),
      "code": self.code,
      "status_code": self.status_code,
      "required": self.required,
      "available": self.available,
      "shortfall": self.shortfall,
      "percentage_available": self.percentage_available,
      "reserved": self.reserved,
      "estimation": self.estimation,
      "suggestion": self.suggestion,
    }


class GenerationTimeoutError(GenerationError):
  """The wall-clock budget ran out before the job reported a terminal status."""

  kind = "timeout"


class GenerationInProgressError(RuntimeError):
  """Raised when a new session is started while another one is still live."""


def _format_amount(value: float) -> str:
  if float(value).is_integer():
    return f"{int(value):,}"
  return f"{value:,.2f}"
