from .controller import CaptureController

__all__ = ["CaptureController"]
