# qr_decoder.py
"""
Overview
Single-frame QR decoding for the redemption scanner. Two interchangeable
engines sit behind DecodeEngine.try_decode(frame) -> Optional[str]:

- ZXingEngine: zxing-cpp's reader used as an opaque detector. Preferred when
  the native module imports and survives a probe read, since it is faster and
  copes with tilt/noise on its own.
- BinarizedZBarEngine: explicit pipeline. Luminance conversion, hybrid
  thresholding (per-tile black points on normal frames, global Otsu on tiny crops)
  and then a ZBar structural decode of the bitmap restricted to QR symbols.

Most frames contain nothing readable, so a miss returns None and any error
inside an engine is swallowed and also reported as None. The continuous loop
never sees an exception from here.

decode_snapshot() is the manual fallback: one explicitly captured frame,
downscaled to a bounded size, retried over a few cheap enhancements.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

cv2.setUseOptimized(True)

# ------------------------------ Decoder Backend Selection ------------------------------
ZXING: Optional[Any] = None
ZBAR_DECODE: Optional[Callable] = None
ZBAR_QR_SYMBOLS: Optional[List[Any]] = None

# Preferred: zxing-cpp
try:
    import zxingcpp as _zxingcpp  # type: ignore

    ZXING = _zxingcpp
except Exception:  # pragma: no cover
    ZXING = None

# Explicit pipeline: pyzbar (needs the zbar shared library)
try:
    from pyzbar.pyzbar import ZBarSymbol as _ZBarSymbol  # type: ignore
    from pyzbar.pyzbar import decode as _zbar_decode  # type: ignore

    ZBAR_DECODE = _zbar_decode
    ZBAR_QR_SYMBOLS = [_ZBarSymbol.QRCODE]
except Exception:  # pragma: no cover
    ZBAR_DECODE = None

BACKENDS = ("zxingcpp", "pyzbar")


class DecoderUnavailable(RuntimeError):
    pass


# ------------------------------ Image utilities ------------------------------

def to_luminance(frame: np.ndarray) -> np.ndarray:
    """Collapse a BGR/BGRA/gray raster to a single 8-bit luminance plane."""
    if frame.ndim == 2:
        lum = frame
    elif frame.shape[2] == 4:
        lum = cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    elif frame.shape[2] == 3:
        lum = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    else:
        lum = frame[:, :, 0]
    if lum.dtype != np.uint8:
        lum = cv2.convertScaleAbs(lum)
    return lum


# Below this size a local window has too few pixels to estimate a threshold.
MIN_LOCAL_THRESHOLD_DIM = 40

BLOCK = 8                # pixels per side of one black-point block
MIN_DYNAMIC_RANGE = 24   # blocks flatter than this carry no edge information
NEIGHBOUR_BLOCKS = 15    # search window (in blocks) for a flat block's black point
SMOOTH_BLOCKS = 5        # each block is thresholded with the 5x5 average around it


def _block_black_points(lum: np.ndarray) -> np.ndarray:
    """One black point per BLOCK x BLOCK tile of `lum` (dims must be multiples of BLOCK)."""
    h, w = lum.shape
    tiles = lum.reshape(h // BLOCK, BLOCK, w // BLOCK, BLOCK).astype(np.float32)
    lo = tiles.min(axis=(1, 3))
    hi = tiles.max(axis=(1, 3))
    mean = tiles.mean(axis=(1, 3))

    has_edges = (hi - lo) > MIN_DYNAMIC_RANGE
    black = np.where(has_edges, mean, lo / 2.0)

    # A flat tile inside a large dark area takes the black point of the
    # contrasty tiles around it, so solid runs of dark modules stay dark.
    weight = has_edges.astype(np.float32)
    k = (NEIGHBOUR_BLOCKS, NEIGHBOUR_BLOCKS)
    num = cv2.blur(mean * weight, k, borderType=cv2.BORDER_REPLICATE)
    den = cv2.blur(weight, k, borderType=cv2.BORDER_REPLICATE)
    nearby = np.divide(num, den, out=np.zeros_like(num), where=den > 0)
    borrow = ~has_edges & (den > 0) & (lo < nearby)
    black = np.where(borrow, nearby, black)

    return cv2.blur(black, (SMOOTH_BLOCKS, SMOOTH_BLOCKS), borderType=cv2.BORDER_REPLICATE)


def hybrid_binarize(lum: np.ndarray) -> np.ndarray:
    """Two-level bitmap (0 dark, 255 light) tolerant of uneven lighting.

    Frames are split into small tiles with a black point each. Tiles without
    contrast borrow the black point of the surrounding contrasty tiles, and
    every tile is thresholded against the average of its 5x5 neighbourhood.
    Tiny crops fall back to a global Otsu threshold.
    """
    h, w = lum.shape[:2]
    if min(h, w) < MIN_LOCAL_THRESHOLD_DIM:
        _, bw = cv2.threshold(lum, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        return bw

    pad_h, pad_w = -h % BLOCK, -w % BLOCK
    padded = cv2.copyMakeBorder(lum, 0, pad_h, 0, pad_w, cv2.BORDER_REPLICATE) if pad_h or pad_w else lum
    thresholds = _block_black_points(padded)
    per_pixel = np.repeat(np.repeat(thresholds, BLOCK, axis=0), BLOCK, axis=1)[:h, :w]
    return np.where(lum <= per_pixel, 0, 255).astype(np.uint8)


def downscale(frame: np.ndarray, max_dim: int) -> np.ndarray:
    h, w = frame.shape[:2]
    longest = max(h, w)
    if max_dim <= 0 or longest <= max_dim:
        return frame
    scale = max_dim / float(longest)
    size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    return cv2.resize(frame, size, interpolation=cv2.INTER_AREA)


def fast_contrast(gray: np.ndarray, alpha: float = 1.6, beta: float = 5.0) -> np.ndarray:
    # y = alpha*x + beta, clipped to [0, 255]
    return cv2.convertScaleAbs(gray, alpha=alpha, beta=beta)


def unsharp_mask(gray: np.ndarray, sigma: float = 1.2, amount: float = 1.0) -> np.ndarray:
    blur = cv2.GaussianBlur(gray, (0, 0), sigma)
    return cv2.addWeighted(gray, 1 + amount, blur, -amount, 0)


def clahe(gray: np.ndarray, clip: float = 2.0, grid: Tuple[int, int] = (8, 8)) -> np.ndarray:
    return cv2.createCLAHE(clipLimit=clip, tileGridSize=grid).apply(gray)


# effort 0: luminance only
# effort 1: + fast contrast
# effort 2: + clahe, sharpened
# effort 3: + inverted (light-on-dark codes)
def snapshot_candidates(lum: np.ndarray, effort: int = 2) -> Iterable[Tuple[np.ndarray, str]]:
    yield lum, "gray"
    if effort >= 1:
        yield fast_contrast(lum), "fastc"
    if effort >= 2:
        yield clahe(lum), "clahe"
        yield unsharp_mask(lum), "sharp"
    if effort >= 3:
        yield 255 - lum, "gray+inv"


# ------------------------------ Engines ------------------------------

class DecodeEngine:
    """tryDecode contract shared by both variants."""

    name = "base"

    def try_decode(self, frame: Optional[np.ndarray]) -> Optional[str]:
        if frame is None or getattr(frame, "size", 0) == 0:
            return None
        try:
            text = self._decode(frame)
        except Exception as e:
            logger.debug("%s decode raised %s: %s", self.name, type(e).__name__, e)
            return None
        return text or None

    def _decode(self, frame: np.ndarray) -> Optional[str]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def _zxing_read(read_barcodes: Callable, gray: np.ndarray):
    kwargs = {}
    fmt = getattr(getattr(ZXING, "BarcodeFormat", None), "QRCode", None)
    if fmt is not None:
        kwargs["formats"] = fmt
    try:
        return read_barcodes(gray, **kwargs)
    except TypeError:
        return read_barcodes(gray)


class ZXingEngine(DecodeEngine):
    name = "zxingcpp"

    def __init__(self, read_barcodes: Optional[Callable] = None) -> None:
        if read_barcodes is None:
            if ZXING is None:
                raise DecoderUnavailable("zxing-cpp is not installed (pip install zxing-cpp)")
            read_barcodes = ZXING.read_barcodes
        self._read = read_barcodes

    def _decode(self, frame: np.ndarray) -> Optional[str]:
        for result in _zxing_read(self._read, to_luminance(frame)) or []:
            text = getattr(result, "text", None)
            if text:
                return str(text)
        return None


class BinarizedZBarEngine(DecodeEngine):
    name = "pyzbar"

    def __init__(self, decode: Optional[Callable] = None) -> None:
        if decode is None:
            if ZBAR_DECODE is None:
                raise DecoderUnavailable("pyzbar/zbar is not installed (pip install pyzbar, plus libzbar0)")
            decode = ZBAR_DECODE
        self._zbar = decode

    def binarize(self, frame: np.ndarray) -> np.ndarray:
        return hybrid_binarize(to_luminance(frame))

    def _decode(self, frame: np.ndarray) -> Optional[str]:
        bitmap = self.binarize(frame)
        kwargs = {"symbols": ZBAR_QR_SYMBOLS} if ZBAR_QR_SYMBOLS else {}
        for sym in self._zbar(bitmap, **kwargs) or []:
            data = getattr(sym, "data", None)
            if data:
                return data.decode("utf-8", errors="replace") if isinstance(data, bytes) else str(data)
        return None


# ------------------------------ Capability probing ------------------------------

def _probe_zxing() -> bool:
    if ZXING is None:
        return False
    try:
        _zxing_read(ZXING.read_barcodes, np.full((32, 32), 255, np.uint8))
    except Exception as e:
        logger.warning("zxing-cpp present but unusable: %s", e)
        return False
    return True


def _probe_zbar() -> bool:
    return ZBAR_DECODE is not None


def available_backends() -> List[str]:
    """Usable backends in preference order."""
    out = []
    if _probe_zxing():
        out.append("zxingcpp")
    if _probe_zbar():
        out.append("pyzbar")
    return out


def resolve_engine(choice: str = "auto") -> DecodeEngine:
    if choice not in ("auto",) + BACKENDS:
        raise ValueError(f"Unknown decoder backend {choice!r}")
    if choice == "zxingcpp":
        return ZXingEngine()
    if choice == "pyzbar":
        return BinarizedZBarEngine()

    usable = available_backends()
    if not usable:
        raise DecoderUnavailable(
            "No QR decoder backend available. Install one of:"
            "  pip install zxing-cpp   (recommended)"
            "  pip install pyzbar   (needs libzbar)"
        )
    engine = ZXingEngine() if usable[0] == "zxingcpp" else BinarizedZBarEngine()
    logger.info("Decoder backend selected: %s (available: %s)", engine.name, ", ".join(usable))
    return engine


# ------------------------------ Manual snapshot ------------------------------

def decode_snapshot(
    engine: DecodeEngine,
    frame: Optional[np.ndarray],
    *,
    max_dim: int = 1024,
    effort: int = 2,
) -> Optional[str]:
    """User-triggered single-shot decode of one captured frame."""
    if frame is None or getattr(frame, "size", 0) == 0:
        return None
    lum = to_luminance(downscale(frame, max_dim))
    for img, tag in snapshot_candidates(lum, effort):
        text = engine.try_decode(img)
        if text:
            logger.debug("Snapshot decoded via %s/%s", engine.name, tag)
            return text
    return None
