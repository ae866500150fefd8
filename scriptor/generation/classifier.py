"""Map failed HTTP exchanges onto the generation error taxonomy."""

from __future__ import annotations

import json
import logging
import math
from typing import Any

import httpx

from scriptor.generation.errors import CreditError, GenerationError, ServerFailure, TransportError
from scriptor.services.models import INSUFFICIENT_CREDITS, ErrorBody

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "API request failed"
DEFAULT_CREDIT_MESSAGE = "Insufficient credits"


def _round_half_up(value: float) -> int:
  # Python's round() is banker's rounding; percentages follow the UI's half-up rule.
  return math.floor(value + 0.5)


def is_credit_failure(status_code: int, body: ErrorBody) -> bool:
  """402 always; any status (403 included) when the code says so."""
  return status_code == 402 or body.is_credit_code


def credit_error_from_body(status_code: int, body: ErrorBody) -> CreditError:
  """Build a CreditError, applying the required=1/available=0 defaults."""
  details = body.details
  required = details.required if details and details.required is not None else 1
  available = details.available if details and details.available is not None else 0
  shortfall = max(0, required - available)
  if required > 0:
    percentage_available = min(_round_half_up(available / required * 100), 100)
  else:
    percentage_available = 100
  return CreditError(
    body.error_message or DEFAULT_CREDIT_MESSAGE,
    required=required,
    available=available,
    shortfall=shortfall,
    percentage_available=percentage_available,
    code=body.code or INSUFFICIENT_CREDITS,
    status_code=status_code,
    reserved=details.reserved if details else None,
    estimation=details.estimation if details else None,
  )


def classify(status_code: int, body: Any, *, default_message: str = DEFAULT_ERROR_MESSAGE) -> GenerationError:
  """Classify a non-2xx response.

  Rules, in priority order:
    1. 402, or an INSUFFICIENT_CREDITS code at any status -> CreditError
    2. anything else -> ServerFailure carrying the best available message
  """
  parsed = ErrorBody.parse(body)
  if is_credit_failure(status_code, parsed):
    error = credit_error_from_body(status_code, parsed)
    logger.debug("Credit error detected status=%s required=%s available=%s", status_code, error.required, error.available)
    return error
  return ServerFailure(parsed.error_message or default_message, status_code=status_code)


def classify_transport(exc: Exception) -> TransportError:
  """Wrap a network failure or body decode failure."""
  if isinstance(exc, httpx.TimeoutException):
    return TransportError(f"Request timed out: {exc}")
  if isinstance(exc, httpx.RequestError):
    return TransportError(f"Network error: {exc}")
  if isinstance(exc, json.JSONDecodeError | ValueError):
    return TransportError(f"Invalid JSON response: {exc}")
  return TransportError(f"{type(exc).__name__}: {exc}")


def classify_response(response: httpx.Response, *, default_message: str = DEFAULT_ERROR_MESSAGE) -> GenerationError:
  """Classify a non-2xx httpx response whose body may not be JSON."""
  try:
    body = response.json()
  except ValueError:
    body = None
  logger.debug("API error response status=%s reason=%s body=%s", response.status_code, response.reason_phrase, body)
  return classify(response.status_code, body, default_message=default_message)
