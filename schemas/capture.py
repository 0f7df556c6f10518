from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple

import numpy as np

from .identity import IdentityFields


class CaptureState(Enum):
    """Enrollment capture state machine states."""
    IDLE = "Idle"
    CAPTURING = "Capturing"
    COMPLETE = "Complete"
    ABORTED = "Aborted"


@dataclass(frozen=True)
class CaptureSample:
    """One accepted camera frame and when it was taken."""
    frame: np.ndarray
    captured_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class EnrollmentPayload:
    """
    Output of CaptureController.finalize(): everything needed to embed
    and insert one identity into the gallery.
    """
    fields: IdentityFields
    samples: Tuple[CaptureSample, ...]

    @property
    def frames(self) -> List[np.ndarray]:
        return [s.frame for s in self.samples]

    def __len__(self) -> int:
        return len(self.samples)
