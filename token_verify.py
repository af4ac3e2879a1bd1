# token_verify.py
"""
Client for the redemption-token verification service.

The scanned payload is whatever the issuing side rendered into the QR code,
normally a JSON blob like {"token": ..., "objectId": ..., "expiresAt": ...}.
Only the token field is pulled out; everything else is left alone.

verify() never raises. Each call produces exactly one outcome:
  Validated  -> 2xx and the body does not say exists=false
  NotFound   -> any status whose JSON body is {"exists": false, ...}
  Failed     -> transport error, malformed body, or any other non-2xx
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import requests

logger = logging.getLogger(__name__)

TOKEN_KEYS = ("token", "oneTimeToken")


@dataclass(frozen=True)
class Validated:
    data: Any
    raw: Any = None
    kind = "validated"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "data": self.data}


@dataclass(frozen=True)
class NotFound:
    message: Optional[str] = None
    raw: Any = None
    kind = "not_found"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


@dataclass(frozen=True)
class Failed:
    reason: str
    status: Optional[int] = None
    kind = "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "reason": self.reason, "status": self.status}


VerificationOutcome = Union[Validated, NotFound, Failed]


def extract_token(payload: str) -> str:
    """Token to submit for a decoded payload; the payload itself, untouched, if it is not a JSON object."""
    payload = payload or ""
    s = payload.strip()
    if s.startswith("{"):
        try:
            data = json.loads(s)
        except ValueError:
            data = None
        if isinstance(data, dict):
            for key in TOKEN_KEYS:
                val = data.get(key)
                if isinstance(val, str) and val.strip():
                    return val.strip()
    return payload


def _is_not_found(body: Any) -> bool:
    return isinstance(body, dict) and body.get("exists") is False


def _snippet(resp: requests.Response, limit: int = 200) -> str:
    try:
        text = resp.text or ""
    except Exception:
        text = ""
    return text.strip()[:limit]


class VerifyClient:
    def __init__(
        self,
        url: Optional[str],
        *,
        session_token: Optional[str] = None,
        timeout: float = 10.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.session_token = session_token
        self.timeout = timeout
        self._http = http or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> "VerifyClient":
        return cls(
            settings.verify_url,
            session_token=settings.session_token,
            timeout=settings.verify_timeout_s,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.session_token:
            headers["auth"] = self.session_token
        return headers

    def verify(self, payload: str) -> VerificationOutcome:
        if not self.url:
            return Failed("verification endpoint not configured")

        token = extract_token(payload)
        if not token.strip():
            return Failed("decoded payload carries no token")

        try:
            resp = self._http.post(
                self.url,
                json={"oneTimeToken": token},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("Verification request failed: %s", e)
            return Failed(f"transport error: {e}")

        try:
            body = resp.json()
        except ValueError:
            body = None

        status = resp.status_code
        if _is_not_found(body):
            logger.info("Token not found (HTTP %s)", status)
            return NotFound(message=body.get("message"), raw=body)

        if not 200 <= status < 300:
            logger.warning("Verification failed with HTTP %s", status)
            detail = _snippet(resp)
            reason = f"server error ({status})" + (f" {detail}" if detail else "")
            return Failed(reason, status=status)

        if body is None:
            return Failed("malformed response (not JSON)", status=status)

        if isinstance(body, dict) and "exists" in body:
            data = body.get("data")
        else:
            data = body
        logger.info("Token validated (HTTP %s)", status)
        return Validated(data=data, raw=body)

    def close(self) -> None:
        self._http.close()
