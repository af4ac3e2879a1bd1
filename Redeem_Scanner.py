#!/usr/bin/env python3
"""
Overview
Desktop front end for coupon/permit redemption. Opens the camera, keeps
decoding QR codes from the live feed, and submits the first readable code to
the verification service exactly once. The verified (or rejected) result is
printed as JSON so a calling program can act on it.

The frame loop is pumped from this module's main loop so the OpenCV preview
window, the key handling and the decode ticks all stay on the main thread.

Keys (preview window)
  p        pause / resume decoding
  r        rescan (clears the last code and result)
  s        single-shot decode of a downscaled snapshot
  q / Esc  quit

Usage examples
  python Redeem_Scanner.py
  python Redeem_Scanner.py --backend pyzbar --facing user --timeout 30
  python Redeem_Scanner.py --no-gui --timeout 20 --output result.json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import cv2
import numpy as np

from scan_session import ScanSession
from scan_state import ScanState, SessionSnapshot
from settings import ScannerSettings, configure_logging
from token_verify import VerifyClient

logger = logging.getLogger(__name__)

WINDOW_NAME = "Redemption QR Scanner"

# BGR
STATE_COLORS = {
    ScanState.SCANNING: (94, 197, 34),
    ScanState.VERIFYING: (11, 158, 245),
    ScanState.DONE: (246, 130, 59),
}
IDLE_COLOR = (184, 163, 148)

STATE_LABELS = {
    ScanState.IDLE: "Idle",
    ScanState.ACQUIRING_CAMERA: "Preparing camera...",
    ScanState.SCANNING: "Scanning... centre the QR code in the frame",
    ScanState.VERIFYING: "Verifying with server...",
    ScanState.DONE: "Verified",
    ScanState.ERRORED: "Error",
}


@dataclass
class ScanResult:
    success: bool
    state: str
    code: Optional[str] = None
    outcome: Optional[Dict[str, Any]] = None
    message: str = ""


def _result_from(snap: SessionSnapshot, message: str = "") -> ScanResult:
    outcome = snap.outcome.to_dict() if snap.outcome is not None else None
    success = snap.state == ScanState.DONE and outcome is not None and outcome["kind"] == "validated"
    if not message:
        if snap.state == ScanState.DONE:
            message = "Valid code." if outcome and outcome["kind"] == "validated" else "Code does not exist."
        elif snap.state == ScanState.ERRORED:
            message = snap.error or "Scan failed."
    return ScanResult(success, snap.state.value, snap.last_code, outcome, message)


def status_line(snap: SessionSnapshot) -> str:
    if snap.state == ScanState.SCANNING and snap.paused:
        return "Paused"
    if snap.state == ScanState.DONE and snap.outcome is not None and snap.outcome.kind == "not_found":
        return "Code does not exist"
    if snap.state == ScanState.ERRORED and snap.error:
        return f"Error: {snap.error}"
    return STATE_LABELS[snap.state]


def draw_overlay(frame: Optional[np.ndarray], snap: SessionSnapshot, size=(1280, 720)) -> np.ndarray:
    if frame is None:
        w, h = size
        overlay = np.zeros((h, w, 3), np.uint8)
    else:
        overlay = frame.copy()
    h, w = overlay.shape[:2]

    # Guide rectangle inset from the frame edges
    inset = max(8, min(w, h) // 12)
    cv2.rectangle(overlay, (inset, inset), (w - inset, h - inset), (255, 255, 255), 1)

    color = STATE_COLORS.get(snap.state, IDLE_COLOR)
    if snap.state == ScanState.SCANNING and snap.paused:
        color = IDLE_COLOR
    cv2.circle(overlay, (20, h - 24), 6, color, -1)
    cv2.putText(overlay, status_line(snap)[:90], (34, h - 18),
                cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 2, cv2.LINE_AA)
    if snap.last_code:
        cv2.putText(overlay, f"Last code: {snap.last_code[:70]}", (10, 28),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, (200, 200, 200), 1, cv2.LINE_AA)
    return overlay


def run_scanner(
    session: ScanSession,
    *,
    timeout_s: float = 0,
    show_window: bool = True,
) -> ScanResult:
    """Drive `session` until a result is on screen and the user leaves (or, headless, until the first result)."""
    interval = max(0.001, session.tick_interval_s)
    if show_window:
        try:
            cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)
        except Exception:
            pass

    start_time = time.time()
    session.start()
    try:
        while True:
            snap = session.snapshot
            if timeout_s and (time.time() - start_time) > timeout_s and snap.state != ScanState.DONE:
                return ScanResult(False, snap.state.value, snap.last_code, None,
                                  "Timed out without verifying a code.")

            loop = session.loop
            if loop is not None:
                loop.pump()
            snap = session.snapshot

            if not show_window:
                if snap.state in (ScanState.DONE, ScanState.ERRORED):
                    return _result_from(snap)
                time.sleep(interval)
                continue

            cv2.imshow(WINDOW_NAME, draw_overlay(session.last_frame, snap))
            key = cv2.waitKey(max(1, int(interval * 1000))) & 0xFF
            if key in (27, ord("q")):
                if snap.state in (ScanState.DONE, ScanState.ERRORED):
                    return _result_from(snap)
                return ScanResult(False, snap.state.value, snap.last_code, None, "Cancelled by user.")
            if key == ord("p"):
                if not session.pause():
                    session.resume()
            elif key == ord("r"):
                session.rescan()
            elif key == ord("s"):
                res = session.snapshot_decode()
                logger.info("Snapshot decode: %s", "hit" if res["code"] else "miss")
    finally:
        session.teardown()
        if show_window:
            try:
                cv2.destroyAllWindows()
            except Exception:
                pass


def scan_and_verify(
    settings: Optional[ScannerSettings] = None,
    *,
    timeout: float = 0,
    show_window: bool = True,
    backend: Optional[str] = None,
    facing: Optional[str] = None,
) -> ScanResult:
    """Call this from a larger program to scan and verify one redemption code."""
    settings = settings or ScannerSettings.from_env()
    overrides: Dict[str, Any] = {"threaded_loop": False}
    if backend:
        overrides["backend"] = backend
    if facing:
        overrides["facing"] = facing
    verifier = VerifyClient.from_settings(settings)
    session = ScanSession.from_settings(settings, verifier, **overrides)
    try:
        return run_scanner(session, timeout_s=timeout, show_window=show_window)
    finally:
        verifier.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Scan a redemption QR code, verify it and print a JSON result.")
    parser.add_argument("--timeout", type=float, default=0)
    parser.add_argument("--no-gui", action="store_true")
    parser.add_argument("--backend", choices=["auto", "zxingcpp", "pyzbar"], default=None)
    parser.add_argument("--facing", choices=["environment", "user"], default=None)
    parser.add_argument("--output", type=str, default=None)
    parser.add_argument("--log-level", type=str, default=None)

    args = parser.parse_args()

    try:
        settings = ScannerSettings.from_env()
    except ValueError as e:
        print(json.dumps({"success": False, "error": str(e)}, indent=2))
        sys.exit(2)
    configure_logging(args.log_level or settings.log_level)

    res = scan_and_verify(
        settings,
        timeout=args.timeout,
        show_window=not args.no_gui,
        backend=args.backend,
        facing=args.facing,
    )

    payload = {
        "success": res.success,
        "source": "redeem_scanner",
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "state": res.state,
        "code": res.code,
        "outcome": res.outcome,
        "message": res.message,
    }
    txt = json.dumps(payload, indent=2, ensure_ascii=False)
    print(txt)
    if args.output:
        try:
            with open(args.output, "w", encoding="utf-8") as f:
                f.write(txt)
        except OSError as e:
            print(json.dumps({"success": False, "error": f"Failed to write output: {e}"}), file=sys.stderr)
    if not res.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
