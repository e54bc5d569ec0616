"""Unit tests for splitting answer text from activity noise."""

import pytest

from cdp_monitor.text_classifier import (
    classify_lines,
    is_activity_log_line,
    is_tool_call_line,
    is_ui_chrome_line,
    sanitize_activity_lines,
    separate_output_for_delivery,
    split_output_and_logs,
)


@pytest.mark.parametrize("line", [
    "analyzed",
    "Thinking",
    "Show details",
    "+12 -3",
    "1,204 chars",
    "Ln 12, Col 4",
    "L10-L20",
    "{",
    '"name": "cdp-monitor",',
    "github / search_code",
    "Full output written to output.txt",
    "Thought for 3s",
    "Good Bad",
])
def test_chrome_lines(line):
    assert is_ui_chrome_line(line)


@pytest.mark.parametrize("line", [
    "Here is the implementation.",
    "Analyzed foo.py",
    "",
])
def test_not_chrome_lines(line):
    assert not is_ui_chrome_line(line)


def test_activity_line_needs_an_object_and_bounded_length():
    assert is_activity_log_line("Analyzed foo.py")
    assert is_activity_log_line("Running npm test in packages/api")
    assert not is_activity_log_line("Analyzed")
    assert not is_activity_log_line("Reading " + "x" * 300)
    assert not is_activity_log_line("The tests pass now.")


def test_tool_call_lines_are_a_subset_of_chrome():
    assert is_tool_call_line("mcp tool")
    assert is_tool_call_line("Tool call: read_file")
    assert not is_tool_call_line("Analyzed")


def test_fenced_code_is_never_reclassified():
    tagged = classify_lines("```\nanalyzed\n```")
    assert [kind for kind, _ in tagged] == ["code", "code", "code"]


class TestSplitOutputAndLogs:
    def test_bare_chrome_is_logs(self):
        result = split_output_and_logs("analyzed")
        assert result.output == ""
        assert result.logs == "analyzed"

    def test_plain_answer_is_output(self):
        result = split_output_and_logs("Here is the implementation.")
        assert result.output == "Here is the implementation."
        assert result.logs == ""

    def test_code_block_keeps_chrome_words(self):
        text = "Done:\n```\nanalyzed\n```"
        assert split_output_and_logs(text).output == text

    def test_simple_path_routes_each_line(self):
        text = "Analyzed main.py\nThe bug was an off-by-one.\n\n\n\nFixed in loop.py.\nGood Bad"
        result = split_output_and_logs(text)

        assert result.output == "The bug was an off-by-one.\n\nFixed in loop.py."
        assert result.logs == "Analyzed main.py\nGood Bad"

    def test_last_paragraph_wins_with_tool_calls(self):
        text = "\n".join([
            "mcp tool",
            "github / search_code",
            "Searching the repo for the auth handler.",
            "",
            "Thought for 3s",
            "Reading auth.py",
            "Found the handler in auth.py.",
            "",
            "The handler now validates tokens.",
            "Good",
            "Bad",
        ])
        result = split_output_and_logs(text)

        assert result.output == "The handler now validates tokens."
        assert "Found the handler in auth.py." in result.logs
        assert "mcp tool" in result.logs
        assert "Good" in result.logs.split("\n")

    def test_empty_input(self):
        result = split_output_and_logs("  \n ")
        assert (result.output, result.logs) == ("", "")


def test_sanitize_keeps_activity_and_drops_chrome():
    text = "Analyzed\nAnalyzed foo.py\n\nAnalyzed foo.py\nShow details\n  Running tests  "
    assert sanitize_activity_lines(text) == "Analyzed foo.py\nRunning tests"


def test_separate_prefers_dom_output():
    result = separate_output_for_delivery("raw text", dom_output="Answer", dom_activity_lines=["Read a.py", "Ran b"])
    assert result.output == "Answer"
    assert result.logs == "Read a.py\nRan b"


def test_separate_falls_back_to_split():
    result = separate_output_for_delivery("Analyzed main.py\nAll good.")
    assert result.output == "All good."
    assert result.logs == "Analyzed main.py"
