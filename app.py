# app.py
from __future__ import annotations

# Standard library
import atexit
import logging
import os
import threading
from typing import Any, Dict, Optional

# Third-party
import cv2
from flask import Flask, Response, jsonify

# Local Files/Helpers
from scan_session import ScanSession
from settings import ScannerSettings, configure_logging
from token_verify import VerifyClient

logger = logging.getLogger(__name__)


# -------------------------------------------------------------------
# Flask setup
# -------------------------------------------------------------------
def create_app(session: Optional[ScanSession] = None, settings: Optional[ScannerSettings] = None) -> Flask:
    """
    Build the scanner API around one shared ScanSession.

    When no session is passed in, one is built from the environment with its
    frame loop on a background thread, and torn down at interpreter exit.
    """
    settings = settings or ScannerSettings.from_env()
    configure_logging(settings.log_level)

    if session is None:
        session = ScanSession.from_settings(settings, VerifyClient.from_settings(settings))
        atexit.register(session.teardown)

    app = Flask(__name__)
    app.config["SCAN_SESSION"] = session
    app.config["SNAPSHOT_LOCK"] = threading.Lock()

    def _session() -> ScanSession:
        return app.config["SCAN_SESSION"]

    def _status_response(changed: Optional[bool] = None, **extra: Any):
        body: Dict[str, Any] = {"ok": True, "status": _session().status()}
        if changed is not None:
            body["changed"] = changed
        body.update(extra)
        return jsonify(body)

    # -------------------------------------------------------------------
    # Routes: API
    # -------------------------------------------------------------------
    @app.get("/api/scan/status")
    def api_scan_status():
        sess = _session()
        sess.poll()
        return _status_response()

    @app.post("/api/scan/start")
    def api_scan_start():
        """Open the camera and begin decoding. No-op unless idle or errored."""
        return _status_response(_session().start())

    @app.post("/api/scan/pause")
    def api_scan_pause():
        return _status_response(_session().pause())

    @app.post("/api/scan/resume")
    def api_scan_resume():
        return _status_response(_session().resume())

    @app.post("/api/scan/rescan")
    def api_scan_rescan():
        return _status_response(_session().rescan())

    @app.post("/api/scan/reset")
    def api_scan_reset():
        return _status_response(_session().reset())

    @app.post("/api/scan/snapshot")
    def api_scan_snapshot():
        # Manual fallback when the continuous scan struggles; one at a time.
        lock = app.config["SNAPSHOT_LOCK"]
        if not lock.acquire(blocking=False):
            return jsonify({"ok": False, "error": "snapshot already in progress"}), 409
        try:
            res = _session().snapshot_decode()
        finally:
            lock.release()
        return _status_response(res["accepted"], code=res["code"])

    @app.get("/api/scan/preview.jpg")
    def api_scan_preview():
        frame = _session().last_frame
        if frame is None:
            return ("", 204)
        ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), 80])
        if not ok:
            return jsonify({"ok": False, "error": "could not encode preview"}), 500
        return Response(buf.tobytes(), mimetype="image/jpeg", headers={"Cache-Control": "no-store"})

    @app.errorhandler(Exception)
    def _unhandled(e):
        code = getattr(e, "code", None)
        if isinstance(code, int) and 400 <= code < 500:
            return jsonify({"ok": False, "error": str(e)}), code
        logger.exception("Unhandled error in scanner API: %s", e)
        return jsonify({"ok": False, "error": str(e)}), 500

    return app


# -------------------------------------------------------------------
# Main
# -------------------------------------------------------------------
if __name__ == "__main__":
    # Camera access from a browser needs HTTPS or localhost; this API serves JSON and JPEG only.
    create_app().run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")),
                     debug=(os.getenv("FLASK_DEBUG") == "1"), use_reloader=False)
