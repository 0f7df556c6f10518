"""
verification/orchestrator.py

Liveness-gated identification, one attempt at a time.

    Idle -> CapturingFrame -> AwaitingLiveness -> Live | Spoof | Error
      ^                                            |
      +-------------------- reset() ---------------+

verify():
  1. refuse with AlreadyInProgress unless Idle (at most one attempt);
  2. grab one frame synchronously (none -> Error + NoFrame);
  3. hand the frame to the liveness gate on a worker thread and return
     the attempt immediately.

Liveness completion:
  - live  -> Live, then (and only then) embed + gallery.classify() on the
             worker; the match result is attached when it resolves.
  - spoof -> Spoof; identification is never attempted.

The liveness verdict is published (attempt.liveness_ready) before the
match step is even queued, so callers can tell "liveness confirmed,
matching in progress" (attempt.matching_pending) from "matching complete"
(attempt.match_ready). An embedder / matcher failure after a live verdict
ends the attempt in Error, never in Spoof and never with a match.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Optional

from core.config import MatchingConfig
from core.errors import AlreadyInProgress, EmbeddingError, NoFrame
from core.interfaces import Embedder, FrameSource
from identity.gallery import EmbeddingGallery
from liveness.gate import LivenessGate
from schemas import AttemptState, VerificationAttempt

logger = logging.getLogger(__name__)


class VerificationOrchestrator:
    """
    Sequences frame -> liveness -> (embed -> classify) for one attempt.

        orch = VerificationOrchestrator(camera, gate, embedder, gallery, cfg.matching)
        attempt = orch.verify()
        verdict = attempt.wait_liveness(timeout=15)
        match = attempt.wait_match(timeout=15)
        orch.reset()
    """

    def __init__(
        self,
        camera: FrameSource,
        gate: LivenessGate,
        embedder: Embedder,
        gallery: EmbeddingGallery,
        cfg: Optional[MatchingConfig] = None,
        *,
        executor: Optional[Executor] = None,
        workers: int = 1,
    ) -> None:
        self.cfg = cfg or MatchingConfig()
        self.camera = camera
        self.gate = gate
        self.embedder = embedder
        self.gallery = gallery
        self.k = int(self.cfg.k)
        self.max_distance = float(self.cfg.max_distance)

        if executor is None:
            executor = ThreadPoolExecutor(max_workers=max(1, int(workers)), thread_name_prefix="verify")
            self._owns_executor = True
        else:
            self._owns_executor = False
        self._executor = executor

        self._lock = threading.RLock()
        self._attempt: Optional[VerificationAttempt] = None
        self._seq = 0

        logger.info(
            "VerificationOrchestrator initialised | k=%d max_distance=%.3f threshold>%.2f",
            self.k,
            self.max_distance,
            self.gate.threshold,
        )


    @property
    def state(self) -> AttemptState:
        with self._lock:
            return self._attempt.state if self._attempt is not None else AttemptState.IDLE

    @property
    def attempt(self) -> Optional[VerificationAttempt]:
        with self._lock:
            return self._attempt


    def verify(self) -> VerificationAttempt:
        """
        Start one verification attempt and return it without waiting for
        the liveness service.

        Raises AlreadyInProgress unless Idle (the existing attempt is left
        untouched) and NoFrame if the camera yields nothing (the attempt
        is then in Error until reset()).
        """
        with self._lock:
            current = self._attempt
            if current is not None:
                if current.state.in_flight:
                    raise AlreadyInProgress(
                        f"Attempt #{current.attempt_id} is still {current.state.value}."
                    )
                raise AlreadyInProgress(
                    f"Attempt #{current.attempt_id} ended in {current.state.value}; call reset() first."
                )
            self._seq += 1
            attempt = VerificationAttempt(attempt_id=self._seq, state=AttemptState.CAPTURING_FRAME)
            self._attempt = attempt

        logger.info("Verification attempt #%d started.", attempt.attempt_id)

        try:
            frame = self.camera.get_frame()
        except Exception:
            logger.exception("Camera error during verification frame capture.")
            frame = None

        with self._lock:
            if frame is None:
                self._finish(attempt, AttemptState.ERROR, error="NoFrame")
                attempt.liveness_ready.set()
                logger.warning("Attempt #%d: camera yielded no frame.", attempt.attempt_id)
                raise NoFrame("Camera yielded no frame.")

            attempt.captured_frame = frame
            attempt.state = AttemptState.AWAITING_LIVENESS

        self._executor.submit(self._run_liveness, attempt)
        return attempt

    def reset(self) -> None:
        """
        Return to Idle from a terminal state, discarding the attempt's
        captured frame and results. No-op when already Idle; raises
        AlreadyInProgress while the frame or the liveness call is pending.
        """
        with self._lock:
            attempt = self._attempt
            if attempt is None:
                return
            if attempt.state.in_flight:
                raise AlreadyInProgress(
                    f"Cannot reset while attempt #{attempt.attempt_id} is {attempt.state.value}."
                )
            self._attempt = None
            attempt.captured_frame = None
            attempt.liveness_result = None
            attempt.match_result = None
            attempt.liveness_ready.set()
            attempt.match_ready.set()

        logger.info("Verification reset (attempt #%d discarded).", attempt.attempt_id)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def __enter__(self) -> "VerificationOrchestrator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


    def _is_current(self, attempt: VerificationAttempt) -> bool:
        return self._attempt is attempt

    def _finish(self, attempt: VerificationAttempt, state: AttemptState, error: Optional[str] = None) -> None:
        attempt.state = state
        attempt.error = error
        attempt.finished_at = time.time()
        attempt.match_ready.set()

    def _run_liveness(self, attempt: VerificationAttempt) -> None:
        try:
            verdict = self.gate.check(attempt.captured_frame)
        except Exception as exc:
            logger.exception("Attempt #%d: liveness stage crashed.", attempt.attempt_id)
            with self._lock:
                if self._is_current(attempt):
                    self._finish(attempt, AttemptState.ERROR, error=f"LivenessFailed: {exc}")
                attempt.liveness_ready.set()
            return

        with self._lock:
            if not self._is_current(attempt):
                logger.debug("Attempt #%d superseded; dropping liveness verdict.", attempt.attempt_id)
                return

            attempt.liveness_result = verdict
            if verdict.is_live:
                attempt.state = AttemptState.LIVE
                attempt.liveness_ready.set()
                try:
                    self._executor.submit(self._run_match, attempt)
                except RuntimeError as exc:
                    self._finish(attempt, AttemptState.ERROR, error=f"MatchFailed: {exc}")
                    return
                logger.info(
                    "Attempt #%d: LIVE (confidence=%.3f); matching queued.",
                    attempt.attempt_id,
                    verdict.confidence,
                )
            else:
                self._finish(attempt, AttemptState.SPOOF)
                attempt.liveness_ready.set()
                logger.info(
                    "Attempt #%d: SPOOF (confidence=%.3f, fallback=%s); identification skipped.",
                    attempt.attempt_id,
                    verdict.confidence,
                    verdict.fallback,
                )

    def _run_match(self, attempt: VerificationAttempt) -> None:
        frame = attempt.captured_frame
        try:
            if frame is None:
                raise EmbeddingError("Captured frame was discarded before matching.")
            query = self.embedder.embed(frame)
            result = self.gallery.classify(query, self.k, self.max_distance)
        except EmbeddingError as exc:
            self._fail_match(attempt, f"EmbeddingFailed: {exc}")
            return
        except Exception as exc:
            logger.exception("Attempt #%d: matching failed.", attempt.attempt_id)
            self._fail_match(attempt, f"MatchFailed: {type(exc).__name__}: {exc}")
            return

        with self._lock:
            if self._is_current(attempt):
                attempt.match_result = result
                attempt.finished_at = time.time()
            attempt.match_ready.set()

        if result is None:
            logger.info("Attempt #%d: no match.", attempt.attempt_id)
        else:
            logger.info(
                "Attempt #%d: matched %s (distance=%.4f).",
                attempt.attempt_id,
                result.external_ref,
                result.distance,
            )

    def _fail_match(self, attempt: VerificationAttempt, error: str) -> None:
        logger.warning("Attempt #%d: %s", attempt.attempt_id, error)
        with self._lock:
            if self._is_current(attempt):
                self._finish(attempt, AttemptState.ERROR, error=error)
            else:
                attempt.match_ready.set()
