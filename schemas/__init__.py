"""
schemas/__init__.py
Central exports for lightweight data structures used across SecureID.

We keep each schema in its own module (identity, liveness, capture,
attempt) and re-export them here for convenience:

    from schemas import Identity, LivenessResult, VerificationAttempt, ...

This file should remain VERY lightweight (no heavy imports or model code).
"""

from .identity import (
    IdentityFields,
    Identity,
    IdentitySummary,
    Neighbor,
    MatchResult,
    GalleryStats,
)
from .liveness import LivenessResult
from .capture import CaptureState, CaptureSample, EnrollmentPayload
from .attempt import AttemptState, VerificationAttempt

__all__ = [
    "IdentityFields",
    "Identity",
    "IdentitySummary",
    "Neighbor",
    "MatchResult",
    "GalleryStats",
    "LivenessResult",
    "CaptureState",
    "CaptureSample",
    "EnrollmentPayload",
    "AttemptState",
    "VerificationAttempt",
]
