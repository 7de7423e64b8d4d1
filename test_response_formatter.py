from __future__ import annotations

from shared.models import StepResult
from shared.response_formatter import (
    clarification_message,
    completion_message,
    confirmation_question,
    failure_message,
    summarize_output,
)


def _result(output: str | None) -> StepResult:
    return StepResult(step_id="s1", action="excel_read_range", success=True, output=output)


def test_completion_message_prefers_payload_message_and_rounds_numbers():
    text = completion_message([_result('{"message": "Average is 36.88999938964844"}')], 0.4)
    assert text == "Average is 36.89"

    assert completion_message([_result('{"summary": "Sorted 20 rows"}')], 0.4) == "Sorted 20 rows"


def test_completion_message_uses_short_plain_output_of_last_step():
    results = [_result("first"), _result("Chart created")]
    assert completion_message(results, 1.0) == "Chart created"


def test_completion_message_falls_back_to_step_count():
    long_text = "x" * 250
    assert completion_message([_result(long_text)], 2.34) == "Completed 1 step(s) in 2.3s."
    assert completion_message([_result('{"values": [[1]]}'), _result(None)], 1.0) == "Completed 2 step(s) in 1.0s."
    assert completion_message([], 1.0) == "Completed, but no step ran successfully."


def test_questions_and_failures():
    assert confirmation_question(3) == "About to run 3 write operation(s). Continue?"
    assert clarification_message("  请问结果放在哪里？ ") == "请问结果放在哪里？"
    assert clarification_message(None) == "Please provide more details."
    assert failure_message("took 1.23456s") == "Operation failed: took 1.23s"
    assert failure_message("") == "Operation failed."


def test_summarize_output_is_single_line_and_bounded():
    assert summarize_output(None) is None
    assert summarize_output('{"message": "done\\n  now"}') == "done now"
    assert summarize_output("a\n\nb") == "a b"
    summary = summarize_output("word " * 60)
    assert len(summary) == 120
    assert summary.endswith("...")
