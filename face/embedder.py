"""
face/embedder.py

InsightFace-backed feature extractor (buffalo_l: detection + ArcFace).

Implements core.interfaces.Embedder: one BGR frame in, one L2-normalised
512-D float32 vector out (the embedding of the most confident face).
Install with the optional extra:  pip install secureid[insightface]
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np
from insightface.app import FaceAnalysis

from core.errors import EmbeddingError
from core.interfaces import Embedder

logger = logging.getLogger(__name__)


class InsightFaceEmbedder(Embedder):
    """
    Wrapper around InsightFace FaceAnalysis.

    Responsibilities:
      - Initialise FaceAnalysis with the configured pack (buffalo_l).
      - Pick the highest-scoring face above min_det_score.
      - Return its normalised embedding, or raise EmbeddingError.
    """

    def __init__(
        self,
        model_name: str = "buffalo_l",
        use_gpu: bool = False,
        det_size: Tuple[int, int] = (640, 640),
        min_det_score: float = 0.5,
    ) -> None:
        providers: List[str] = ["CPUExecutionProvider"]
        ctx_id = -1
        if use_gpu:
            providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
            ctx_id = 0

        logger.info(
            "Initialising InsightFace pack=%s det_size=%s providers=%s",
            model_name,
            det_size,
            providers,
        )
        self._app = FaceAnalysis(name=model_name, providers=providers)
        self._app.prepare(ctx_id=ctx_id, det_size=det_size)
        self.min_det_score = float(min_det_score)
        self._dim: Optional[int] = None

    @property
    def dim(self) -> Optional[int]:
        """Embedding size observed so far (512 for buffalo_l)."""
        return self._dim

    def embed(self, frame: np.ndarray) -> np.ndarray:
        if frame is None:
            raise EmbeddingError("No frame to embed.")

        try:
            faces = self._app.get(frame)
        except Exception as exc:
            raise EmbeddingError(f"InsightFace inference failed: {exc}") from exc

        faces = [f for f in faces if float(getattr(f, "det_score", 0.0)) >= self.min_det_score]
        if not faces:
            raise EmbeddingError("No face detected in frame.")

        best = max(faces, key=lambda f: float(f.det_score))
        emb = getattr(best, "normed_embedding", None)
        if emb is None:
            raise EmbeddingError("Detected face carries no embedding.")

        emb = np.asarray(emb, dtype=np.float32).reshape(-1)
        self._dim = int(emb.size)
        return emb
