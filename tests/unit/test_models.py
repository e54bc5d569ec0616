"""Unit tests for model constructors."""

from cdp_monitor.models import CdpContext, CdpTarget, ClickResult, ResponsePhase


def test_context_prefers_origin_over_url():
    context = CdpContext.from_dict({"id": 4, "origin": "vscode-webview://cascade-panel", "url": "ignored"})
    assert context.id == 4
    assert context.url == "vscode-webview://cascade-panel"
    assert CdpContext.from_dict({"id": 5, "url": "https://x"}).url == "https://x"


def test_target_reads_debugger_url():
    target = CdpTarget.from_dict({
        "id": "A1", "title": "proj - Antigravity", "type": "page",
        "url": "vscode-file://workbench.html", "webSocketDebuggerUrl": "ws://127.0.0.1:9222/devtools/page/A1",
    })
    assert target.ws_url.endswith("/A1")
    assert CdpTarget.from_dict({"id": "B"}).ws_url is None


def test_click_result_from_value():
    assert ClickResult.from_value({"ok": True, "method": "tooltip"}) == ClickResult(ok=True, method="tooltip")
    assert not ClickResult.from_value({"ok": "yes"}).ok
    assert ClickResult.from_value(None).error == "evaluation returned empty"


def test_terminal_phases():
    terminal = {phase for phase in ResponsePhase if phase.is_terminal}
    assert terminal == {ResponsePhase.COMPLETE, ResponsePhase.TIMEOUT, ResponsePhase.QUOTA_REACHED}
    assert ResponsePhase.QUOTA_REACHED.value == "quotaReached"
