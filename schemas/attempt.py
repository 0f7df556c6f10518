from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

from .identity import MatchResult
from .liveness import LivenessResult


class AttemptState(Enum):
    """Verification attempt state machine states."""
    IDLE = "Idle"
    CAPTURING_FRAME = "CapturingFrame"
    AWAITING_LIVENESS = "AwaitingLiveness"
    LIVE = "Live"
    SPOOF = "Spoof"
    ERROR = "Error"

    @property
    def in_flight(self) -> bool:
        return self in (AttemptState.CAPTURING_FRAME, AttemptState.AWAITING_LIVENESS)

    @property
    def terminal(self) -> bool:
        return self in (AttemptState.LIVE, AttemptState.SPOOF, AttemptState.ERROR)


@dataclass(eq=False)
class VerificationAttempt:
    """
    One ephemeral verification attempt.

    Only the VerificationOrchestrator mutates it. Callers observe:

      - state                : current AttemptState
      - liveness_result      : set once the gate answered
      - match_result         : MatchResult, or None for "no match"
      - liveness_ready       : Event set when liveness_result is available
                               (or the attempt failed before it)
      - match_ready          : Event set when matching finished, or when it
                               will never run (spoof / error)
      - error                : short error tag for the Error state

    "Liveness confirmed, matching in progress" is state == LIVE with
    match_ready not yet set (see matching_pending).
    """

    attempt_id: int
    started_at: float = field(default_factory=time.time)
    state: AttemptState = AttemptState.CAPTURING_FRAME
    captured_frame: Optional[np.ndarray] = None
    liveness_result: Optional[LivenessResult] = None
    match_result: Optional[MatchResult] = None
    error: Optional[str] = None
    finished_at: Optional[float] = None

    liveness_ready: threading.Event = field(default_factory=threading.Event, repr=False)
    match_ready: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def matching_pending(self) -> bool:
        return self.state is AttemptState.LIVE and not self.match_ready.is_set()

    @property
    def matched(self) -> bool:
        return self.match_result is not None

    def wait_liveness(self, timeout: Optional[float] = None) -> Optional[LivenessResult]:
        """Block until the liveness verdict (or an early failure) is known."""
        self.liveness_ready.wait(timeout)
        return self.liveness_result

    def wait_match(self, timeout: Optional[float] = None) -> Optional[MatchResult]:
        """Block until matching finished (or will never run)."""
        self.match_ready.wait(timeout)
        return self.match_result

    def as_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "state": self.state.value,
            "liveness": self.liveness_result.as_dict() if self.liveness_result else None,
            "match": self.match_result.as_dict() if self.match_result else None,
            "matching_pending": self.matching_pending,
            "error": self.error,
        }
