"""
identity/enrollment.py

Turns a completed capture session into an enrolled identity:

    payload  = controller.finalize()          (IncompleteCapture otherwise)
    vectors  = embedder.embed(each sample)    (one vector per sample, in order)
    identity = gallery.enroll(fields, vectors, reference_sample=first sample)
    controller.reset()

With a store, the snapshot including the new identity is written before
the identity becomes visible in the gallery; a failed save commits
nothing. Any failure leaves the controller in Complete with its samples,
so the operator can fix the cause (key, disk) and call
enroll_from_capture() again, or reset explicitly.
"""

from __future__ import annotations

import logging
from typing import Optional

from capture.controller import CaptureController
from core.interfaces import Embedder
from schemas import Identity

from .gallery import EmbeddingGallery
from .gallery_store import GalleryStore

logger = logging.getLogger(__name__)


class EnrollmentService:
    def __init__(
        self,
        gallery: EmbeddingGallery,
        embedder: Embedder,
        store: Optional[GalleryStore] = None,
    ) -> None:
        self.gallery = gallery
        self.embedder = embedder
        self.store = store

    def enroll_from_capture(self, controller: CaptureController) -> Identity:
        payload = controller.finalize()
        frames = payload.frames

        vectors = self.embedder.embed_many(frames)
        if len(vectors) != len(frames):
            raise RuntimeError(
                f"Embedder returned {len(vectors)} vectors for {len(frames)} samples."
            )

        persist = self.store.save if self.store is not None else None
        identity = self.gallery.enroll(
            payload.fields,
            vectors,
            reference_sample=frames[0],
            persist=persist,
        )

        controller.reset()
        logger.info(
            "Enrollment saved: %s (%s) with %d samples.",
            identity.display_name,
            identity.external_ref,
            identity.sample_count,
        )
        return identity
