from __future__ import annotations

import json
import re
from typing import Any

from shared.models import StepResult

PLAIN_OUTPUT_LIMIT = 200
SUMMARY_LIMIT = 120


def _round_numbers_in_text(text: str) -> str:
    if not text:
        return ""

    def repl(match: re.Match[str]) -> str:
        try:
            return f"{float(match.group(0)):.2f}"
        except ValueError:
            return match.group(0)

    return re.sub(r"-?\d+\.\d{3,}", repl, text)


def _message_from_payload(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("message", "summary"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def completion_message(successful_results: list[StepResult], elapsed_seconds: float) -> str:
    """
    Synthesize the user-facing message of a completed run:
    - `message` / `summary` of the last successful step's JSON output
    - short plain-text output as-is
    - otherwise a generic step count and elapsed time
    """
    if not successful_results:
        return "Completed, but no step ran successfully."

    last_output = (successful_results[-1].output or "").strip()
    if last_output:
        try:
            payload = json.loads(last_output)
        except ValueError:
            if len(last_output) < PLAIN_OUTPUT_LIMIT:
                return last_output
        else:
            message = _message_from_payload(payload)
            if message:
                return _round_numbers_in_text(message)

    return f"Completed {len(successful_results)} step(s) in {elapsed_seconds:.1f}s."


def confirmation_question(write_step_count: int) -> str:
    return f"About to run {write_step_count} write operation(s). Continue?"


def clarification_message(question: str | None) -> str:
    text = (question or "").strip()
    return text or "Please provide more details."


def failure_message(error: str) -> str:
    text = _round_numbers_in_text(str(error or "").strip())
    if text:
        return f"Operation failed: {text}"
    return "Operation failed."


def summarize_output(output: str | None) -> str | None:
    """Short, single-line digest of a tool output for episode records."""
    if not output:
        return None
    try:
        payload = json.loads(output)
    except ValueError:
        text = output
    else:
        text = _message_from_payload(payload) or output
    text = " ".join(text.split())
    if len(text) > SUMMARY_LIMIT:
        return text[: SUMMARY_LIMIT - 3] + "..."
    return text
