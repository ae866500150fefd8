"""Command-line front end: start, resume or discard a script generation."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from scriptor.config import Settings, get_settings
from scriptor.core.logging import initialize_logging
from scriptor.generation.errors import CreditError, GenerationInProgressError
from scriptor.generation.events import GenerationEvent
from scriptor.generation.models import GenerationMode, GenerationSession
from scriptor.generation.orchestrator import GenerationOutcome, SessionOrchestrator
from scriptor.services.api_client import ScriptApiClient

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CREDIT = 2


def _print_event(orchestrator: SessionOrchestrator, event: GenerationEvent) -> None:
  if event.kind == "started":
    print(f"Started generation {event.job_id}")
  elif event.kind == "resumed":
    print(f"Resuming generation {event.job_id}")
  elif event.kind == "phase_changed" and event.phase is not None:
    phase = orchestrator.estimator.phase(event.phase)
    print(f"[{event.phase + 1}/{len(orchestrator.estimator.phases)}] {phase.description}")


def _exit_code(outcome: GenerationOutcome | None) -> int:
  if outcome is None or outcome.succeeded:
    return EXIT_OK
  if outcome.detached:
    print("Stopped watching; the generation keeps running on the server. Run `scriptor resume` later.")
    return EXIT_OK
  if isinstance(outcome.error, CreditError):
    error = outcome.error
    print(f"Insufficient credits: {error.available} of {error.required} available ({error.percentage_available}%).")
    print(error.suggestion)
    return EXIT_CREDIT
  print(f"Generation failed: {outcome.error}", file=sys.stderr)
  return EXIT_FAILED


def _report_success(outcome: GenerationOutcome) -> None:
  if outcome.succeeded:
    print(f"Script generated successfully: {outcome.job_id}")
    if outcome.result is not None:
      print(json.dumps(outcome.result, indent=2, ensure_ascii=False, default=str))


def _load_payload(path: Path) -> dict[str, Any]:
  payload = json.loads(path.read_text(encoding="utf-8"))
  if not isinstance(payload, dict):
    raise ValueError("payload JSON must be an object")
  return payload


def _confirm_resume(assume_yes: bool) -> Callable[[GenerationSession], bool]:
  def _confirm(session: GenerationSession) -> bool:
    if assume_yes:
      return True
    answer = input(f"Generation {session.job_id} ({session.mode.value}) is still in progress. Continue checking its status? [Y/n] ")
    return answer.strip().lower() in {"", "y", "yes"}

  return _confirm


async def _run(args: argparse.Namespace, settings: Settings) -> int:
  async with ScriptApiClient(settings) as client:
    orchestrator = SessionOrchestrator.from_settings(settings, service=client)
    orchestrator.subscribe(lambda event: _print_event(orchestrator, event))

    if args.command == "generate":
      payload = _load_payload(args.payload)
      outcome = await orchestrator.start(payload, GenerationMode(args.mode))
    else:
      outcome = await orchestrator.try_resume(_confirm_resume(args.yes))
      if outcome is None:
        print("No generation in progress.")

  if outcome is not None:
    _report_success(outcome)
  return _exit_code(outcome)


def _show_status(settings: Settings) -> int:
  session = SessionOrchestrator.from_settings(settings).find_resumable()
  if session is None:
    print("No generation in progress.")
  else:
    print(json.dumps(session.to_record(), indent=2, ensure_ascii=False))
  return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog="scriptor", description="Generate ad scripts and follow the job until it finishes.")
  subparsers = parser.add_subparsers(dest="command", required=True)

  generate = subparsers.add_parser("generate", help="Start a new generation from a JSON payload.")
  generate.add_argument("--payload", type=Path, required=True, help="Path to the form payload JSON.")
  generate.add_argument("--mode", choices=[mode.value for mode in GenerationMode], default=GenerationMode.DETAILED.value)

  resume = subparsers.add_parser("resume", help="Continue watching a generation started earlier.")
  resume.add_argument("--yes", action="store_true", help="Resume without asking.")

  subparsers.add_parser("discard", help="Forget the stored in-flight generation.")
  subparsers.add_parser("status", help="Show the stored in-flight generation, if any.")
  return parser


def main(argv: list[str] | None = None) -> int:
  args = build_parser().parse_args(argv)
  settings = get_settings()
  initialize_logging(settings)

  if args.command == "status":
    return _show_status(settings)
  if args.command == "discard":
    SessionOrchestrator.from_settings(settings).dismiss()
    print("Stored generation discarded.")
    return EXIT_OK

  try:
    return asyncio.run(_run(args, settings))
  except GenerationInProgressError as exc:
    print(str(exc), file=sys.stderr)
    return EXIT_FAILED
  except KeyboardInterrupt:
    # The job keeps running remotely and the stored session is left for `resume`.
    print("\nStopped watching; run `scriptor resume` to pick the generation back up.")
    return EXIT_OK
  except (OSError, ValueError) as exc:
    logger.error("Generation command failed: %s", exc)
    return EXIT_FAILED
