from .gate import LivenessGate, normalize_response
from .client import HttpLivenessClassifier

__all__ = ["LivenessGate", "normalize_response", "HttpLivenessClassifier"]
