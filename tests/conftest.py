"""Shared fixtures and fakes for the SecureID test suites."""

import logging
import threading
from typing import Any, Callable, List, Mapping, Optional

import numpy as np
import pytest

from core.config import default_config
from core.errors import EmbeddingError
from core.interfaces import Embedder, FrameSource, LivenessClassifier

DIM = 8


def make_frame(value: int) -> np.ndarray:
    """Tiny BGR frame whose pixel value encodes its embedding."""
    return np.full((4, 4, 3), value, dtype=np.uint8)


def vector_for(value: int, dim: int = DIM) -> np.ndarray:
    return np.full(dim, value / 255.0, dtype=np.float32)


class FakeCamera(FrameSource):
    """Yields queued frames (None entries simulate dropped frames), then a default."""

    def __init__(self, frames: Optional[List[Optional[np.ndarray]]] = None, default: Optional[np.ndarray] = None):
        self.frames = list(frames or [])
        self.default = default
        self.calls = 0

    def get_frame(self) -> Optional[np.ndarray]:
        self.calls += 1
        if self.frames:
            return self.frames.pop(0)
        return self.default


class StubClassifier(LivenessClassifier):
    """Returns a fixed answer, raises a fixed error, and can block until released."""

    def __init__(self, response: Any = None, error: Optional[BaseException] = None, block: bool = False):
        self.response = response if response is not None else {
            "isReal": True, "confidence": 0.95, "reason": "Natural skin texture",
        }
        self.error = error
        self.release = threading.Event()
        if not block:
            self.release.set()
        self.calls = 0

    def classify(self, frame: np.ndarray) -> Mapping[str, Any]:
        self.calls += 1
        self.release.wait(5.0)
        if self.error is not None:
            raise self.error
        return self.response


class FakeEmbedder(Embedder):
    """Embedding = pixel value of the frame spread over DIM components."""

    def __init__(self, dim: int = DIM, fail: bool = False, block: bool = False,
                 fn: Optional[Callable[[np.ndarray], np.ndarray]] = None):
        self.dim = dim
        self.fail = fail
        self.fn = fn
        self.release = threading.Event()
        if not block:
            self.release.set()
        self.calls = 0

    def embed(self, frame: np.ndarray) -> np.ndarray:
        self.calls += 1
        self.release.wait(5.0)
        if self.fail:
            raise EmbeddingError("No face detected in frame.")
        if self.fn is not None:
            return self.fn(frame)
        return vector_for(int(frame[0, 0, 0]), self.dim)


class ManualTicker:
    """Ticker double: records lifecycle, fires only when the test says so."""

    instances: List["ManualTicker"] = []

    def __init__(self, interval_sec: float, callback: Callable[[], object], name: str = "ticker"):
        self.interval_sec = interval_sec
        self.callback = callback
        self.name = name
        self.started = False
        self.cancelled = False
        ManualTicker.instances.append(self)

    @property
    def active(self) -> bool:
        return self.started and not self.cancelled

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self, times: int = 1) -> None:
        # A misbehaving timer keeps firing even after cancel().
        for _ in range(times):
            self.callback()


@pytest.fixture
def logger():
    return logging.getLogger("secureid.tests")


@pytest.fixture
def test_config():
    return default_config()


@pytest.fixture
def manual_ticker():
    ManualTicker.instances.clear()
    yield ManualTicker
    ManualTicker.instances.clear()


@pytest.fixture
def gallery():
    from identity.gallery import EmbeddingGallery
    return EmbeddingGallery(metric="euclidean")
