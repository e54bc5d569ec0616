"""Unit tests for error popup parsing and the error popup detector."""

import pytest

from cdp_monitor.dom_scripts import ERROR_POPUP_SNAPSHOT, READ_CLIPBOARD, build_click_expression
from cdp_monitor.error_popup_detector import ErrorPopupDetector, parse_error_popup_snapshot


def _dialog(text="Agent terminated due to error", heading="Agent terminated", buttons=("Dismiss", "Retry")):
    return {
        "text": f"{heading} {text} {' '.join(buttons)}",
        "heading": heading,
        "textNodes": [heading, text, *buttons],
        "buttons": list(buttons),
    }


def test_parse_picks_first_error_dialog_with_buttons():
    unrelated = {"text": "Welcome back", "heading": "Hi", "textNodes": [], "buttons": ["OK"]}
    info = parse_error_popup_snapshot([unrelated, _dialog()])

    assert info.title == "Agent terminated"
    assert info.body == "Agent terminated due to error"
    assert info.buttons == ["Dismiss", "Retry"]


def test_parse_skips_dialogs_without_buttons_and_defaults_title():
    assert parse_error_popup_snapshot([_dialog(buttons=())]) is None

    info = parse_error_popup_snapshot([_dialog(heading="", text="Something went wrong, try again")])
    assert info.title == "Error"
    assert info.body == "Something went wrong, try again"


def test_parse_caps_body():
    info = parse_error_popup_snapshot([_dialog(text="An error occurred " + "x" * 2000)])
    assert len(info.body) == 1000


def test_parse_rejects_non_list():
    assert parse_error_popup_snapshot({"text": "agent terminated"}) is None


@pytest.mark.asyncio
async def test_detector_cooldown_is_ten_seconds(fake_session, recorder, clock):
    detected = recorder()
    fake_session.script(
        ERROR_POPUP_SNAPSHOT,
        [_dialog(text="Agent terminated due to error 1")],
        [_dialog(text="Agent terminated due to error 2")],
        [_dialog(text="Agent terminated due to error 2")],
    )
    detector = ErrorPopupDetector(fake_session, detected, poll_interval=3600, clock=clock)
    detector.start()

    await detector.poll_once()
    clock.advance(9)
    await detector.poll_once()
    assert detected.count == 1

    clock.advance(1)
    await detector.poll_once()
    assert detected.count == 2
    detector.stop()


@pytest.mark.asyncio
async def test_actions_click_fixed_labels_and_read_clipboard(fake_session):
    fake_session.set(build_click_expression("Dismiss"), {"ok": True})
    fake_session.set(READ_CLIPBOARD, "trace id 42")
    detector = ErrorPopupDetector(fake_session, lambda info: None)

    assert await detector.click_dismiss_button() is True
    assert await detector.click_retry_button() is False
    assert await detector.click_copy_debug_info_button() is False
    assert await detector.read_clipboard() == "trace id 42"

    fake_session.set(READ_CLIPBOARD, None)
    assert await detector.read_clipboard() is None
