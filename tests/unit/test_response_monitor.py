"""Unit tests for the ResponseMonitor state machine."""

import asyncio

import pytest

from cdp_monitor.cdp_session import CdpEvaluationError, CdpTransportError
from cdp_monitor.dom_scripts import (
    CLICK_STOP_BUTTON,
    PROCESS_LOG_CANDIDATES,
    QUOTA_SNAPSHOT,
    RESPONSE_CANDIDATES,
    RESPONSE_SEGMENTS,
    STOP_BUTTON_SNAPSHOT,
)
from cdp_monitor.models import ResponsePhase
from cdp_monitor.response_monitor import ResponseMonitor


def _screen(session, generating=False, text=None, quota=False, logs=()):
    session.set(STOP_BUTTON_SNAPSHOT, {"tooltip": generating, "labels": []})
    session.set(QUOTA_SNAPSHOT, {"headings": ["Model quota reached"] if quota else [], "inline": [], "alerts": []})
    session.set(
        RESPONSE_CANDIDATES,
        [{"selector": ".rendered-markdown", "text": text, "order": 1}] if text else [],
    )
    session.set(
        PROCESS_LOG_CANDIDATES,
        [{"selector": ".text-sm", "text": entry, "order": i} for i, entry in enumerate(logs)],
    )


class Events:
    def __init__(self):
        self.progress = []
        self.complete = []
        self.timeout = []
        self.phases = []
        self.logs = []

    def monitor(self, session, **kwargs):
        kwargs.setdefault("poll_interval", 3600)
        kwargs.setdefault("max_duration_seconds", 0)
        return ResponseMonitor(
            session,
            on_progress=self.progress.append,
            on_complete=self.complete.append,
            on_timeout=self.timeout.append,
            on_phase_change=lambda phase, text: self.phases.append((phase, text)),
            on_process_log=self.logs.append,
            **kwargs,
        )


@pytest.mark.asyncio
async def test_full_lifecycle(fake_session):
    events = Events()
    _screen(fake_session)
    monitor = events.monitor(fake_session)
    await monitor.start()

    _screen(fake_session, generating=True)
    await monitor.poll_once()
    _screen(fake_session, generating=True, text="Hello")
    await monitor.poll_once()
    _screen(fake_session, generating=True, text="Hello world")
    await monitor.poll_once()
    _screen(fake_session, generating=False, text="Hello world")
    for _ in range(3):
        await monitor.poll_once()

    assert events.phases == [
        (ResponsePhase.WAITING, None),
        (ResponsePhase.THINKING, None),
        (ResponsePhase.GENERATING, "Hello"),
        (ResponsePhase.COMPLETE, "Hello world"),
    ]
    assert events.progress == ["Hello", "Hello world"]
    assert events.complete == ["Hello world"]
    assert not monitor.is_active()


@pytest.mark.asyncio
async def test_completion_needs_consecutive_ticks_without_stop_button(fake_session):
    events = Events()
    _screen(fake_session)
    monitor = events.monitor(fake_session, stop_gone_confirm_count=3)
    await monitor.start()

    _screen(fake_session, generating=True, text="partial")
    await monitor.poll_once()

    _screen(fake_session, generating=False, text="partial")
    await monitor.poll_once()
    await monitor.poll_once()
    _screen(fake_session, generating=True, text="partial")
    await monitor.poll_once()
    assert monitor.stop_gone_count == 0

    _screen(fake_session, generating=False, text="partial")
    await monitor.poll_once()
    await monitor.poll_once()
    assert events.complete == []
    await monitor.poll_once()
    assert events.complete == ["partial"]


@pytest.mark.asyncio
async def test_missing_stop_button_before_generation_is_not_completion(fake_session):
    events = Events()
    _screen(fake_session)
    monitor = events.monitor(fake_session)
    await monitor.start()

    for _ in range(5):
        await monitor.poll_once()

    assert events.complete == []
    assert monitor.phase == ResponsePhase.WAITING
    monitor.stop()


@pytest.mark.asyncio
async def test_previous_answer_is_not_progress(fake_session):
    events = Events()
    _screen(fake_session, text="previous answer")
    monitor = events.monitor(fake_session)
    await monitor.start()
    assert monitor.baseline_text == "previous answer"

    _screen(fake_session, generating=True, text="previous answer")
    await monitor.poll_once()
    assert events.progress == []
    assert monitor.phase == ResponsePhase.THINKING

    _screen(fake_session, generating=True, text="fresh answer")
    await monitor.poll_once()
    assert events.progress == ["fresh answer"]
    monitor.stop()


@pytest.mark.asyncio
async def test_quota_before_any_text_ends_run(fake_session):
    events = Events()
    _screen(fake_session)
    monitor = events.monitor(fake_session)
    await monitor.start()

    _screen(fake_session, generating=True, quota=True)
    await monitor.poll_once()

    assert monitor.phase == ResponsePhase.QUOTA_REACHED
    assert events.complete == [""]
    assert events.phases[-1] == (ResponsePhase.QUOTA_REACHED, "")
    assert not monitor.is_active()


@pytest.mark.asyncio
async def test_quota_after_text_only_annotates(fake_session):
    events = Events()
    _screen(fake_session)
    monitor = events.monitor(fake_session, stop_gone_confirm_count=1)
    await monitor.start()

    _screen(fake_session, generating=True, text="half an answer")
    await monitor.poll_once()
    _screen(fake_session, generating=True, text="half an answer", quota=True)
    await monitor.poll_once()
    assert monitor.quota_detected
    assert monitor.is_active()

    _screen(fake_session, generating=False, text="half an answer")
    await monitor.poll_once()
    assert monitor.phase == ResponsePhase.COMPLETE
    assert events.complete == ["half an answer"]


@pytest.mark.asyncio
async def test_timeout_fires_once_with_last_text(fake_session):
    events = Events()
    _screen(fake_session)
    monitor = events.monitor(fake_session, max_duration_seconds=0.01)
    await monitor.start()

    _screen(fake_session, generating=True, text="partial")
    await monitor.poll_once()
    await asyncio.sleep(0.05)

    assert events.timeout == ["partial"]
    assert events.complete == []
    assert monitor.phase == ResponsePhase.TIMEOUT
    await monitor.poll_once()
    assert events.timeout == ["partial"]


@pytest.mark.asyncio
async def test_stop_before_terminal_state_fires_nothing(fake_session):
    events = Events()
    _screen(fake_session)
    monitor = events.monitor(fake_session, max_duration_seconds=0.01)
    await monitor.start()

    monitor.stop()
    await asyncio.sleep(0.05)
    _screen(fake_session, generating=False, text="late")
    before = fake_session.count(STOP_BUTTON_SNAPSHOT)
    await monitor.poll_once()

    assert events.timeout == []
    assert events.complete == []
    assert fake_session.count(STOP_BUTTON_SNAPSHOT) == before


@pytest.mark.asyncio
async def test_transport_error_skips_tick(fake_session):
    events = Events()
    _screen(fake_session)
    monitor = events.monitor(fake_session)
    await monitor.start()

    fake_session.fail(STOP_BUTTON_SNAPSHOT, CdpTransportError("closed"))
    await monitor.poll_once()

    assert monitor.is_active()
    assert events.phases == [(ResponsePhase.WAITING, None)]
    monitor.stop()


@pytest.mark.asyncio
async def test_process_logs_emitted_once_and_baseline_skipped(fake_session):
    events = Events()
    _screen(fake_session, logs=["Analyzed old.py"])
    monitor = events.monitor(fake_session)
    await monitor.start()

    _screen(fake_session, generating=True, logs=["Analyzed old.py", "Reading new.py", "Ran pytest -q"])
    await monitor.poll_once()
    await monitor.poll_once()

    assert events.logs == ["Reading new.py\n\nRan pytest -q"]
    monitor.stop()


@pytest.mark.asyncio
async def test_passive_start_completes_without_thinking(fake_session):
    events = Events()
    _screen(fake_session, text="streaming")
    monitor = events.monitor(fake_session, stop_gone_confirm_count=2)
    await monitor.start_passive()
    assert events.phases == [(ResponsePhase.GENERATING, None)]

    _screen(fake_session, generating=False, text="streaming done")
    await monitor.poll_once()
    await monitor.poll_once()

    assert events.progress == ["streaming done"]
    assert events.complete == ["streaming done"]


@pytest.mark.asyncio
async def test_click_stop_button_always_stops_monitoring(fake_session):
    events = Events()
    _screen(fake_session)
    monitor = events.monitor(fake_session)
    await monitor.start()
    fake_session.set(CLICK_STOP_BUTTON, {"ok": True, "method": "tooltip"})

    result = await monitor.click_stop_button()
    assert result.ok
    assert result.method == "tooltip"
    assert not monitor.is_active()

    await monitor.start()
    fake_session.fail(CLICK_STOP_BUTTON, CdpEvaluationError("detached"))
    result = await monitor.click_stop_button()
    assert not result.ok
    assert not monitor.is_active()
    assert events.complete == []


def _segment(text, index, details=False, hint=""):
    return {"text": text, "role": "assistant", "messageIndex": index, "inDetails": details, "hint": hint}


@pytest.mark.asyncio
async def test_structured_mode_reads_answer_and_logs_from_segments(fake_session):
    events = Events()
    earlier = [_segment("Earlier answer.", 0), _segment("Planning the change", 0, details=True)]
    _screen(fake_session, text="legacy text")
    fake_session.set(RESPONSE_SEGMENTS, {"segments": earlier})
    monitor = events.monitor(fake_session, extraction_mode="structured", stop_gone_confirm_count=1)
    await monitor.start()
    assert monitor.structured_baseline == "Earlier answer."

    _screen(fake_session, generating=True, text="legacy text")
    fake_session.set(RESPONSE_SEGMENTS, {"segments": earlier + [
        _segment("Reading main.py", 2, details=True, hint="tool-call"),
        _segment("Done.", 2),
    ]})
    await monitor.poll_once()

    assert events.progress == ["Done."]
    assert events.logs == ["Reading main.py"]
    assert monitor.structured_output == "Done."
    assert monitor.structured_activity == ["Reading main.py"]
    assert fake_session.count(RESPONSE_CANDIDATES) == 1
    assert fake_session.count(PROCESS_LOG_CANDIDATES) == 1

    _screen(fake_session, generating=False, text="legacy text")
    await monitor.poll_once()
    assert events.complete == ["Done."]


@pytest.mark.asyncio
async def test_structured_mode_falls_back_to_text_candidates(fake_session):
    events = Events()
    _screen(fake_session)
    fake_session.fail(RESPONSE_SEGMENTS, CdpEvaluationError("segments script threw"))
    monitor = events.monitor(fake_session, extraction_mode="structured")
    await monitor.start()

    _screen(fake_session, generating=True, text="Legacy answer", logs=["Reading main.py"])
    await monitor.poll_once()

    assert events.progress == ["Legacy answer"]
    assert events.logs == ["Reading main.py"]
    assert monitor.structured_output is None
    assert monitor.structured_activity == []
    monitor.stop()
