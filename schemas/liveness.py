from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class LivenessResult:
    """
    Binary liveness verdict produced by the LivenessGate.

      - is_live    : True only for a high-confidence positive
      - confidence : classifier confidence in [0, 1]
                     (0.0 for the fail-closed fallback)
      - reason     : short explanation from the classifier, or the
                     fallback message when the service failed
      - fallback   : True when the verdict came from the fail-closed path
    """

    is_live: bool
    confidence: float
    reason: str
    fallback: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "is_live": self.is_live,
            "confidence": self.confidence,
            "reason": self.reason,
            "fallback": self.fallback,
        }
