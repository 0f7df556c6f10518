"""
core/errors.py

Exception taxonomy for the SecureID pipeline.

Every error raised by the gallery, the capture controller and the
verification orchestrator derives from SecureIDError. None of them is
fatal to the process: all failures are scoped to one enrollment or one
verification attempt and are cleared with reset().
"""

from __future__ import annotations


class SecureIDError(Exception):
    """Base class for SecureID pipeline errors."""


class InvalidInput(SecureIDError):
    """Missing / empty required enrollment fields or bad arguments."""


class DuplicateIdentity(SecureIDError):
    """An identity with the same external reference is already enrolled."""

    def __init__(self, external_ref: str) -> None:
        super().__init__(f"Identity with external_ref '{external_ref}' already enrolled.")
        self.external_ref = external_ref


class DimensionMismatch(SecureIDError):
    """Feature vector dimension disagrees with the gallery dimension."""

    def __init__(self, expected: int, got: int) -> None:
        super().__init__(f"Embedding dim mismatch: expected {expected}, got {got}.")
        self.expected = expected
        self.got = got


class EmptyGallery(SecureIDError):
    """Query issued against a gallery with no enrolled identities."""


class IncompleteCapture(SecureIDError):
    """finalize() called before the capture reached its sample target."""


class CaptureStateError(SecureIDError):
    """Capture controller operation not valid in the current state."""


class AlreadyInProgress(SecureIDError):
    """A verification attempt is already in flight (or not yet reset)."""


class NoFrame(SecureIDError):
    """The camera yielded no frame for a verification attempt."""


class EmbeddingError(SecureIDError):
    """The embedding extractor could not produce a feature vector."""


class LivenessServiceError(SecureIDError):
    """
    Transport / protocol failure talking to the liveness classifier.

    Raised by classifier clients only. The liveness gate always converts
    it into a fail-closed spoof verdict.
    """
