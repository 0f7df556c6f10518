"""
liveness/gate.py

Liveness gate: wraps the external classifier, normalises its answer and
applies the accept / reject policy.

Policy (binary from the caller's point of view):

    live  <=>  isReal is True  AND  confidence > threshold   (strict)

Everything else is a spoof verdict, including isReal=True with low
confidence. If the classifier call fails for any reason (timeout,
transport error, malformed or missing answer) the gate returns

    LivenessResult(is_live=False, confidence=0.0, reason=<fallback>)

i.e. failure is a deny, never a pass. The failure detail is logged for
operators but never raised to the caller.
"""

from __future__ import annotations

import logging
import math
import numbers
from typing import Any, Mapping, Optional, Tuple

import numpy as np

from core.config import DEFAULT_FALLBACK_REASON, LivenessConfig
from core.interfaces import LivenessClassifier
from schemas import LivenessResult

logger = logging.getLogger(__name__)


class MalformedLivenessResponse(ValueError):
    """Classifier answer missing keys or carrying wrong types."""


def normalize_response(raw: Any) -> Tuple[bool, float, str]:
    """
    Validate a raw classifier answer and return (is_real, confidence, reason).

    Accepts a mapping with keys isReal / confidence / reason (reason is
    optional). confidence must be a finite number in [0, 1]. Raises
    MalformedLivenessResponse on anything else.
    """
    if not isinstance(raw, Mapping):
        raise MalformedLivenessResponse(f"Expected a mapping, got {type(raw).__name__}.")

    if "isReal" not in raw or "confidence" not in raw:
        raise MalformedLivenessResponse(
            f"Missing required keys (got {sorted(map(str, raw.keys()))})."
        )

    is_real = raw["isReal"]
    if not isinstance(is_real, (bool, np.bool_)):
        raise MalformedLivenessResponse(f"isReal must be a boolean, got {is_real!r}.")

    conf = raw["confidence"]
    if isinstance(conf, (bool, np.bool_)) or not isinstance(conf, numbers.Real):
        raise MalformedLivenessResponse(f"confidence must be a number, got {conf!r}.")
    conf = float(conf)
    if not math.isfinite(conf) or not 0.0 <= conf <= 1.0:
        raise MalformedLivenessResponse(f"confidence must be within [0, 1], got {conf!r}.")

    reason = raw.get("reason")
    reason = "" if reason is None else str(reason)

    return bool(is_real), conf, reason


class LivenessGate:
    """
    Main entry point for presentation-attack screening.

        gate = LivenessGate(classifier, cfg.liveness)
        verdict = gate.check(frame)
        if verdict.is_live: ...
    """

    def __init__(
        self,
        classifier: LivenessClassifier,
        cfg: Optional[LivenessConfig] = None,
        *,
        threshold: Optional[float] = None,
        fallback_reason: Optional[str] = None,
    ) -> None:
        self.cfg = cfg or LivenessConfig()
        self.classifier = classifier
        self.threshold = float(self.cfg.threshold if threshold is None else threshold)
        self.fallback_reason = fallback_reason or self.cfg.fallback_reason or DEFAULT_FALLBACK_REASON

        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be in [0,1], got {self.threshold}")

        logger.info("LivenessGate initialised | threshold>%.2f", self.threshold)

    def check(self, frame: np.ndarray) -> LivenessResult:
        """Score one frame. Never raises: failures become a spoof verdict."""
        try:
            raw = self.classifier.classify(frame)
            is_real, confidence, reason = normalize_response(raw)
        except Exception as exc:
            logger.warning(
                "Liveness check failed (%s: %s); failing closed as SPOOF.",
                type(exc).__name__,
                exc,
            )
            return LivenessResult(
                is_live=False,
                confidence=0.0,
                reason=self.fallback_reason,
                fallback=True,
            )

        is_live = bool(is_real and confidence > self.threshold)

        logger.info(
            "Liveness verdict=%s (isReal=%s confidence=%.3f threshold=%.2f) reason=%s",
            "LIVE" if is_live else "SPOOF",
            is_real,
            confidence,
            self.threshold,
            reason,
        )
        return LivenessResult(is_live=is_live, confidence=confidence, reason=reason)
