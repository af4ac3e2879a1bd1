# settings.py
"""
Runtime configuration for the redemption scanner.

Values come from the environment, optionally seeded from a `.env` file that
sits next to this module. Everything is read once into ScannerSettings so the
rest of the code never touches os.environ directly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

HERE = Path(__file__).resolve().parent
DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s | %(message)s"

_logging_configured = False


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.getenv(name)
    if val is None:
        return default
    val = val.strip()
    return val or default


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_indices(name: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        out = tuple(int(tok) for tok in raw.replace(";", ",").split(",") if tok.strip())
    except ValueError:
        raise ValueError(f"{name} must be a comma-separated list of camera indices, got {raw!r}") from None
    return out or default


@dataclass(frozen=True)
class ScannerSettings:
    backend_url: Optional[str] = None
    verify_path: str = "/redemption/verify-token"
    session_token: Optional[str] = None
    verify_timeout_s: float = 10.0

    decoder_backend: str = "auto"
    facing: str = "environment"
    environment_cameras: Tuple[int, ...] = (0,)
    user_cameras: Tuple[int, ...] = (0,)
    frame_width: int = 1280
    frame_height: int = 720
    refresh_hz: float = 30.0
    snapshot_max_dim: int = 1024
    rescan_cooldown_s: float = 0.0

    log_level: str = "INFO"

    @property
    def verify_url(self) -> Optional[str]:
        if not self.backend_url:
            return None
        return self.backend_url.rstrip("/") + "/" + self.verify_path.lstrip("/")

    @property
    def tick_interval_s(self) -> float:
        return 1.0 / self.refresh_hz if self.refresh_hz > 0 else 0.0

    @classmethod
    def from_env(cls, dotenv_path: Optional[Path] = None) -> "ScannerSettings":
        load_dotenv(dotenv_path=dotenv_path or HERE / ".env", override=False)

        backend = (_env_str("SCANNER_BACKEND", "auto") or "auto").lower()
        if backend not in ("auto", "zxingcpp", "pyzbar"):
            raise ValueError(f"SCANNER_BACKEND must be auto, zxingcpp or pyzbar, got {backend!r}")

        facing = (_env_str("SCANNER_FACING", "environment") or "environment").lower()
        if facing not in ("environment", "user"):
            raise ValueError(f"SCANNER_FACING must be environment or user, got {facing!r}")

        return cls(
            backend_url=_env_str("REDEEM_BACKEND_URL"),
            verify_path=_env_str("REDEEM_VERIFY_PATH", "/redemption/verify-token"),
            session_token=_env_str("REDEEM_SESSION_TOKEN"),
            verify_timeout_s=_env_float("REDEEM_VERIFY_TIMEOUT", 10.0),
            decoder_backend=backend,
            facing=facing,
            environment_cameras=_env_indices("SCANNER_CAMERAS_ENVIRONMENT", (0,)),
            user_cameras=_env_indices("SCANNER_CAMERAS_USER", (0,)),
            frame_width=_env_int("SCANNER_FRAME_WIDTH", 1280),
            frame_height=_env_int("SCANNER_FRAME_HEIGHT", 720),
            refresh_hz=_env_float("SCANNER_REFRESH_HZ", 30.0),
            snapshot_max_dim=_env_int("SCANNER_SNAPSHOT_MAX_DIM", 1024),
            rescan_cooldown_s=_env_float("SCANNER_RESCAN_COOLDOWN_S", 0.0),
            log_level=(_env_str("LOG_LEVEL", "INFO") or "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install the root handler once; later calls only adjust the level."""
    global _logging_configured
    resolved = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    if not _logging_configured and not root.handlers:
        logging.basicConfig(level=resolved, format=DEFAULT_LOG_FORMAT)
    else:
        root.setLevel(resolved)
    _logging_configured = True
