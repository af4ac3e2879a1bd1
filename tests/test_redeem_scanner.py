import json
from concurrent.futures import Future

import numpy as np
import pytest

import Redeem_Scanner as cli
from conftest import FakeEngine, FakeVerifier
from scan_state import ScanState, SessionSnapshot
from token_verify import Failed, NotFound, Validated


class InlineExecutor:
    def submit(self, fn, *args, **kwargs):
        fut = Future()
        try:
            fut.set_result(fn(*args, **kwargs))
        except Exception as e:
            fut.set_exception(e)
        return fut

    def shutdown(self, wait=True):
        pass


def test_headless_run_returns_validated_result(make_session, opener):
    session = make_session(engine=FakeEngine(script={3: '{"token":"T1"}'}), executor=InlineExecutor())

    res = cli.run_scanner(session, timeout_s=5, show_window=False)

    assert res.success is True
    assert res.state == "done"
    assert res.code == '{"token":"T1"}'
    assert res.outcome == {"kind": "validated", "data": {"objectId": "X"}}
    assert opener.captures[0].release_count == 1


def test_headless_not_found_is_not_success(make_session):
    session = make_session(
        engine=FakeEngine(default="T1"),
        executor=InlineExecutor(),
        verifier=FakeVerifier(NotFound(message="no such token")),
    )
    res = cli.run_scanner(session, timeout_s=5, show_window=False)
    assert res.success is False
    assert res.state == "done"
    assert res.message == "Code does not exist."


def test_headless_permission_denied(make_session, denied_opener):
    session = make_session(open_camera=denied_opener)
    res = cli.run_scanner(session, timeout_s=5, show_window=False)
    assert res.success is False
    assert res.state == "errored"
    assert "denied" in res.message


def test_headless_timeout(make_session, opener):
    session = make_session(engine=FakeEngine())
    res = cli.run_scanner(session, timeout_s=0.05, show_window=False)
    assert res.success is False
    assert res.message.startswith("Timed out")
    assert opener.captures[0].release_count == 1


def _snap(state, **kw):
    return SessionSnapshot(state=state, **kw)


@pytest.mark.parametrize("snap, expected", [
    (_snap(ScanState.SCANNING, paused=True), "Paused"),
    (_snap(ScanState.VERIFYING), "Verifying with server..."),
    (_snap(ScanState.DONE, outcome=NotFound()), "Code does not exist"),
    (_snap(ScanState.DONE, outcome=Validated(data={})), "Verified"),
    (_snap(ScanState.ERRORED, error="Camera access was denied"), "Error: Camera access was denied"),
])
def test_status_line(snap, expected):
    assert cli.status_line(snap) == expected


def test_draw_overlay_without_frame():
    out = cli.draw_overlay(None, SessionSnapshot(), size=(320, 240))
    assert out.shape == (240, 320, 3)


def test_draw_overlay_leaves_frame_untouched():
    frame = np.zeros((240, 320, 3), np.uint8)
    out = cli.draw_overlay(frame, _snap(ScanState.SCANNING))
    assert out is not frame
    assert frame.max() == 0
    assert out.max() > 0


def test_result_for_failed_verification():
    snap = _snap(ScanState.ERRORED, outcome=Failed("server error (502)", 502), error="server error (502)")
    res = cli._result_from(snap)
    assert res.success is False
    assert res.message == "server error (502)"
    assert res.outcome["kind"] == "failed"


def test_main_prints_json_and_exit_code(monkeypatch, capsys, tmp_path):
    out_file = tmp_path / "result.json"
    monkeypatch.setattr(
        cli, "scan_and_verify",
        lambda settings, **kw: cli.ScanResult(False, "errored", None, None, "Camera access was denied"),
    )
    monkeypatch.setattr("sys.argv", ["Redeem_Scanner.py", "--no-gui", "--output", str(out_file)])

    with pytest.raises(SystemExit) as exc_info:
        cli.main()

    assert exc_info.value.code == 1
    printed = json.loads(capsys.readouterr().out)
    assert printed["success"] is False
    assert printed["source"] == "redeem_scanner"
    assert printed["message"] == "Camera access was denied"
    assert json.loads(out_file.read_text(encoding="utf-8")) == printed


def test_main_success_exits_cleanly(monkeypatch, capsys):
    monkeypatch.setattr(
        cli, "scan_and_verify",
        lambda settings, **kw: cli.ScanResult(True, "done", "T1", {"kind": "validated", "data": {}}, "Valid code."),
    )
    monkeypatch.setattr("sys.argv", ["Redeem_Scanner.py", "--no-gui"])

    cli.main()

    assert json.loads(capsys.readouterr().out)["code"] == "T1"


def test_main_rejects_bad_settings(monkeypatch, capsys):
    monkeypatch.setenv("SCANNER_BACKEND", "opencv")
    monkeypatch.setattr("sys.argv", ["Redeem_Scanner.py", "--no-gui"])

    with pytest.raises(SystemExit) as exc_info:
        cli.main()

    assert exc_info.value.code == 2
    assert "SCANNER_BACKEND" in capsys.readouterr().out
