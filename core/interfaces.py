"""
core/interfaces.py

Abstract interfaces for the external collaborators of the pipeline.

The core never talks to a camera, a classifier service or an embedding
model directly; it only depends on these contracts. Concrete
implementations live in core.camera, liveness.client and face.embedder,
and tests provide small fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Mapping, Optional

import numpy as np


class FrameSource(ABC):
    """
    Camera capability.

    Responsibility:
      - Yield the most recent raw image frame on demand.
    """

    @abstractmethod
    def get_frame(self) -> Optional[np.ndarray]:
        """
        Return one BGR image (H, W, 3) or None if no frame is available.

        Must not block for long: the capture controller calls this from
        its ticker thread and the orchestrator calls it synchronously.
        """
        raise NotImplementedError


class LivenessClassifier(ABC):
    """
    External liveness scoring service.

    Responsibility:
      - Send one frame plus a fixed task description to the service.
      - Return its raw structured answer with keys
        'isReal', 'confidence', 'reason'.
    """

    @abstractmethod
    def classify(self, frame: np.ndarray) -> Mapping[str, Any]:
        """
        Blocking request/response call.

        May raise anything on failure; the liveness gate treats every
        failure as a spoof verdict.
        """
        raise NotImplementedError


class Embedder(ABC):
    """
    Feature-embedding extractor.

    Responsibility:
      - Map one image to a fixed-dimension feature vector.
    """

    @abstractmethod
    def embed(self, frame: np.ndarray) -> np.ndarray:
        """
        Return a 1-D float32 feature vector.

        Raises core.errors.EmbeddingError when no vector can be produced.
        """
        raise NotImplementedError

    def embed_many(self, frames: List[np.ndarray]) -> List[np.ndarray]:
        """Embed several frames, preserving order."""
        return [self.embed(f) for f in frames]
