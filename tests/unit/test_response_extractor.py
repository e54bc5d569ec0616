"""Unit tests for response candidate scoring, process log extraction and indicators."""

from cdp_monitor.models import ResponseCandidate, SegmentKind
from cdp_monitor.response_extractor import (
    classify_segments,
    detect_quota,
    extract_process_logs,
    infer_segment_kind,
    is_generating,
    is_response_candidate,
    looks_like_quota_popup,
    looks_like_tool_output,
    parse_candidates,
    process_log_key,
    select_response_text,
)


def _c(text, selector=".rendered-markdown", order=0, excluded=False):
    return ResponseCandidate(selector=selector, text=text, order=order, excluded=excluded)


class TestSelectResponseText:
    def test_highest_score_wins_over_recency(self):
        candidates = [
            _c("from prose", selector=".prose", order=50),
            _c("from markdown", selector=".rendered-markdown", order=10),
        ]
        assert select_response_text(candidates) == "from markdown"

    def test_recency_breaks_ties(self):
        candidates = [_c("older answer", order=1), _c("newer answer", order=2)]
        assert select_response_text(candidates) == "newer answer"

    def test_noise_candidates_are_skipped(self):
        candidates = [
            _c("The fix is in auth.py.", order=1),
            _c("Analyzed auth.py", order=2),
            _c("Good Bad", order=3),
            _c("json", order=4),
            _c("hidden detail", order=5, excluded=True),
            _c("x", order=6),
        ]
        assert select_response_text(candidates) == "The fix is in auth.py."

    def test_nothing_acceptable_is_none(self):
        assert select_response_text([]) is None
        assert select_response_text([_c("Thinking about it")]) is None


def test_parse_candidates_normalizes_raw_entries():
    raw = [{"selector": ".prose", "text": " hi\r\n ", "order": "3"}, "junk", None]
    assert parse_candidates(raw) == [ResponseCandidate(selector=".prose", text="hi", order=3)]
    assert parse_candidates({"not": "a list"}) == []


def test_quota_popup_needs_action_words_unless_exhausted():
    assert looks_like_quota_popup("You have exhausted your quota")
    assert looks_like_quota_popup("Model quota reached. Dismiss")
    assert not looks_like_quota_popup("Rate limit handling is implemented in retry.py")
    assert not is_response_candidate(_c("Model quota reached. Upgrade your plan"))


def test_tool_output_shapes():
    assert looks_like_tool_output("github / search_code")
    assert looks_like_tool_output("Full output written to output.txt")
    assert looks_like_tool_output("Title: Docs URL: https://x Snippet: text")
    assert not looks_like_tool_output("Here is the summary of changes")


def test_process_logs_in_document_order_and_clipped():
    candidates = [
        _c("Reading config.yaml", order=5),
        _c("Analyzed main.py", order=1),
        _c("The answer text", order=3),
        _c("Thought for 3s " + "x" * 400, order=7),
        _c("Ran", order=8),
    ]
    logs = extract_process_logs(candidates)

    assert logs[:2] == ["Analyzed main.py", "Reading config.yaml"]
    assert len(logs) == 3
    assert len(logs[2]) == 300


def test_process_log_key_is_prefix():
    assert process_log_key("  a\r\n" + "b" * 300) == ("a\n" + "b" * 300)[:200]


def test_is_generating_from_tooltip_or_stop_label():
    assert is_generating({"tooltip": True, "labels": []})
    assert is_generating({"tooltip": False, "labels": [["", "Stop generating", ""]]})
    assert is_generating({"labels": [["停止", "", ""]]})
    assert not is_generating({"tooltip": False, "labels": [["Send", "", ""]]})
    assert not is_generating(None)


def test_detect_quota_sources():
    assert detect_quota({"headings": ["Model quota reached"], "inline": [], "alerts": []})
    assert detect_quota({"headings": [], "inline": ["You have exhausted your quota"], "alerts": []})
    assert detect_quota({"alerts": ["Rate limit exceeded"]})
    assert not detect_quota({"headings": [], "inline": ["rate limit docs"], "alerts": []})
    assert not detect_quota(None)


def _seg(text, role="assistant", index=0, details=False, feedback=False, hint=""):
    return {
        "text": text, "role": role, "messageIndex": index,
        "inDetails": details, "inFeedback": feedback, "hint": hint,
    }


class TestSegments:
    def test_kinds(self):
        assert infer_segment_kind("Here is the fix.", role="assistant") == SegmentKind.ASSISTANT_BODY
        assert infer_segment_kind("Good Bad", role="assistant") == SegmentKind.FEEDBACK
        assert infer_segment_kind("Helpful?", in_feedback=True) == SegmentKind.FEEDBACK
        assert infer_segment_kind("read_file", in_details=True, hint="tool-call header") == SegmentKind.TOOL_CALL
        assert infer_segment_kind("42 lines", in_details=True, hint="tool-output") == SegmentKind.TOOL_RESULT
        assert infer_segment_kind("Considering options", in_details=True) == SegmentKind.THINKING
        assert infer_segment_kind("jina-mcp-server / search_web", role="assistant") == SegmentKind.TOOL_CALL
        assert infer_segment_kind("Full output written to output.txt#L1-20") == SegmentKind.TOOL_RESULT
        assert infer_segment_kind("Analyzing the repository", role="assistant") == SegmentKind.THINKING
        assert infer_segment_kind("Hello there", role="user") == SegmentKind.UNKNOWN

    def test_classify_splits_latest_answer_from_activity(self):
        payload = {"segments": [
            _seg("Old answer.", index=0),
            _seg("Hi", role="user", index=1),
            _seg("Thinking about the bug", index=2, details=True),
            _seg("read_file main.py", index=2, details=True, hint="tool-call"),
            _seg("Fixed the bug.", index=2),
            _seg("Tests pass now.", index=2),
            _seg("Thinking about the bug", index=2, details=True),
            _seg("Good Bad", index=2, feedback=True),
        ]}

        result = classify_segments(payload)

        assert result.output == "Fixed the bug.\n\nTests pass now."
        assert result.activity_lines == ["Thinking about the bug", "read_file main.py"]
        assert result.feedback == ["Good Bad"]
        assert result.segment_counts == {"assistant-body": 3, "thinking": 2, "tool-call": 1, "feedback": 1}

    def test_unusable_payload_is_none(self):
        assert classify_segments(None) is None
        assert classify_segments({"segments": "nope"}) is None
        assert classify_segments([_seg("text")]) is None
        empty = classify_segments({"segments": [_seg("   "), "junk"]})
        assert empty.output == "" and empty.activity_lines == []
