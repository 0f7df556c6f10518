from .orchestrator import VerificationOrchestrator

__all__ = ["VerificationOrchestrator"]
