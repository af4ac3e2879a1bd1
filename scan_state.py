# scan_state.py
"""
State for one scan session, held as a single immutable snapshot.

Every event is a pure function (snapshot, ...) -> snapshot. A function that
does not apply in the current state returns the snapshot it was given, so
callers detect a no-op with `new is old`.

The debounce gate lives inside the snapshot: it remembers the last accepted
payload and whether a verification is in flight. A payload is accepted at most
once until the gate is cleared by rescan/reset, and never while another
verification is outstanding.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from token_verify import Failed, VerificationOutcome


class ScanState(str, Enum):
    IDLE = "idle"
    ACQUIRING_CAMERA = "acquiring_camera"
    SCANNING = "scanning"
    VERIFYING = "verifying"
    DONE = "done"
    ERRORED = "errored"


# States in which the camera handle is released.
RELEASED_STATES = frozenset({ScanState.IDLE, ScanState.ERRORED})


class TickPlan(str, Enum):
    NOOP = "noop"
    PREVIEW = "preview"   # read a frame for display, do not decode
    DECODE = "decode"


# ------------------------------ Debounce gate ------------------------------

@dataclass(frozen=True)
class DebounceGate:
    last_accepted: Optional[str] = None
    in_flight: bool = False
    # (payload, accepted_at) pairs kept across clears for the rescan cooldown
    recent: Tuple[Tuple[str, float], ...] = ()


def gate_accept(
    gate: DebounceGate,
    payload: str,
    *,
    now: float = 0.0,
    cooldown_s: float = 0.0,
) -> Tuple[bool, DebounceGate]:
    if gate.in_flight or not payload:
        return False, gate
    if payload == gate.last_accepted:
        return False, gate

    recent: Tuple[Tuple[str, float], ...] = ()
    if cooldown_s > 0:
        if any(p == payload and now - at < cooldown_s for p, at in gate.recent):
            return False, gate
        recent = tuple((p, at) for p, at in gate.recent if now - at < cooldown_s)
        recent += ((payload, now),)
    return True, DebounceGate(last_accepted=payload, in_flight=True, recent=recent)


def gate_complete(gate: DebounceGate) -> DebounceGate:
    # the accepted value stays so a code held in frame is not re-submitted
    return replace(gate, in_flight=False)


def gate_clear(gate: DebounceGate) -> DebounceGate:
    return DebounceGate(recent=gate.recent)


# ------------------------------ Session snapshot ------------------------------

@dataclass(frozen=True)
class SessionSnapshot:
    state: ScanState = ScanState.IDLE
    paused: bool = False
    gate: DebounceGate = field(default_factory=DebounceGate)
    outcome: Optional[VerificationOutcome] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    # Bumped by start/rescan/reset. Work started under an older generation is dropped.
    generation: int = 0

    @property
    def last_code(self) -> Optional[str]:
        return self.gate.last_accepted

    @property
    def in_flight(self) -> bool:
        return self.gate.in_flight

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "paused": self.paused,
            "last_code": self.last_code,
            "verifying": self.in_flight,
            "outcome": self.outcome.to_dict() if self.outcome is not None else None,
            "error": self.error,
            "error_kind": self.error_kind,
        }


def plan_tick(s: SessionSnapshot) -> TickPlan:
    if s.state in (ScanState.SCANNING, ScanState.VERIFYING) and not s.paused:
        return TickPlan.DECODE
    if s.state == ScanState.DONE:
        return TickPlan.PREVIEW
    return TickPlan.NOOP


# ------------------------------ Transitions ------------------------------

def start(s: SessionSnapshot) -> SessionSnapshot:
    if s.state not in (ScanState.IDLE, ScanState.ERRORED):
        return s
    return SessionSnapshot(
        state=ScanState.ACQUIRING_CAMERA,
        gate=gate_clear(s.gate),
        generation=s.generation + 1,
    )


def camera_opened(s: SessionSnapshot) -> SessionSnapshot:
    if s.state != ScanState.ACQUIRING_CAMERA:
        return s
    return replace(s, state=ScanState.SCANNING, paused=False)


def fail(s: SessionSnapshot, kind: str, reason: str) -> SessionSnapshot:
    """Camera or decoder could not be brought up."""
    if s.state != ScanState.ACQUIRING_CAMERA:
        return s
    return replace(s, state=ScanState.ERRORED, paused=False, error=reason, error_kind=kind)


def pause(s: SessionSnapshot) -> SessionSnapshot:
    if s.state != ScanState.SCANNING or s.paused:
        return s
    return replace(s, paused=True)


def resume(s: SessionSnapshot) -> SessionSnapshot:
    if s.state != ScanState.SCANNING or not s.paused:
        return s
    return replace(s, paused=False)


def payload_decoded(
    s: SessionSnapshot,
    payload: str,
    *,
    now: float = 0.0,
    cooldown_s: float = 0.0,
    manual: bool = False,
) -> Tuple[SessionSnapshot, bool]:
    """Offer a decoded payload to the gate. Returns (snapshot, accepted)."""
    if s.state not in (ScanState.SCANNING, ScanState.VERIFYING):
        return s, False
    if s.paused and not manual:
        return s, False
    accepted, gate = gate_accept(s.gate, payload, now=now, cooldown_s=cooldown_s)
    if not accepted:
        return s, False
    return replace(s, state=ScanState.VERIFYING, paused=False, gate=gate, outcome=None), True


def verification_finished(
    s: SessionSnapshot,
    outcome: VerificationOutcome,
    generation: int,
) -> SessionSnapshot:
    if generation != s.generation or s.state != ScanState.VERIFYING:
        return s
    gate = gate_complete(s.gate)
    if isinstance(outcome, Failed):
        return replace(
            s,
            state=ScanState.ERRORED,
            gate=gate,
            outcome=outcome,
            error=outcome.reason,
            error_kind="verification_failed",
        )
    return replace(s, state=ScanState.DONE, gate=gate, outcome=outcome, error=None, error_kind=None)


def rescan(s: SessionSnapshot) -> SessionSnapshot:
    """Clear code and outcome and scan again on the live camera."""
    if s.state not in (ScanState.SCANNING, ScanState.VERIFYING, ScanState.DONE):
        return s
    return SessionSnapshot(
        state=ScanState.SCANNING,
        gate=gate_clear(s.gate),
        generation=s.generation + 1,
    )


def reset(s: SessionSnapshot) -> SessionSnapshot:
    if s.state == ScanState.IDLE and s == SessionSnapshot(gate=s.gate, generation=s.generation):
        return s
    return SessionSnapshot(gate=gate_clear(s.gate), generation=s.generation + 1)
