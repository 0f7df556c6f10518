"""
capture/controller.py

Enrollment capture state machine.

    Idle --start()--> Capturing --target reached--> Complete
      ^                  |                              |
      +------stop()------+                              |
      +------------------------reset()------------------+

While Capturing, a fixed-cadence ticker (default every 200 ms) calls
tick(), which grabs one frame from the camera. A missing frame skips the
tick without counting. Reaching the target (default 20) moves to
Complete and cancels the ticker; Complete is terminal until reset().

Invariants:
  - sample_count never exceeds target;
  - no sample is stored after Complete without an intervening reset();
  - every exit from Capturing cancels the ticker.

tick() may be called directly (manual cadence, tests). A late tick from a
misbehaving timer is a no-op.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional, Tuple

import numpy as np

from core.config import CaptureConfig
from core.errors import CaptureStateError, IncompleteCapture, InvalidInput
from core.interfaces import FrameSource
from core.scheduler import PeriodicTicker
from schemas import CaptureSample, CaptureState, EnrollmentPayload, IdentityFields

logger = logging.getLogger(__name__)

TickerFactory = Callable[[float, Callable[[], object], str], object]


class CaptureController:
    """
    Drives sample acquisition for one enrollment at a time.

        ctl = CaptureController(camera, cfg.capture)
        ctl.start(IdentityFields("Jane Doe", "2024001"))
        ctl.wait_complete(timeout=10)
        payload = ctl.finalize()
    """

    def __init__(
        self,
        camera: FrameSource,
        cfg: Optional[CaptureConfig] = None,
        *,
        ticker_factory: TickerFactory = PeriodicTicker,
    ) -> None:
        self.cfg = cfg or CaptureConfig()
        self.camera = camera
        self.target = int(self.cfg.target)
        self.interval_sec = int(self.cfg.interval_ms) / 1000.0
        self._ticker_factory = ticker_factory

        if self.target <= 0:
            raise ValueError(f"capture target must be positive, got {self.target}")

        self._lock = threading.RLock()
        self._state = CaptureState.IDLE
        self._fields: Optional[IdentityFields] = None
        self._samples: List[CaptureSample] = []
        self._aborted = False
        self._ticker = None
        self._complete = threading.Event()
        # Bumped on every start / stop / reset; a tick only stores into the
        # session it started in.
        self._session = 0

        logger.info(
            "CaptureController initialised | target=%d interval=%.0fms",
            self.target,
            self.interval_sec * 1000.0,
        )


    @property
    def state(self) -> CaptureState:
        with self._lock:
            return self._state

    @property
    def session_state(self) -> CaptureState:
        """Like state, but reports ABORTED for a stopped, partial session."""
        with self._lock:
            if self._state is CaptureState.IDLE and self._aborted:
                return CaptureState.ABORTED
            return self._state

    @property
    def fields(self) -> Optional[IdentityFields]:
        with self._lock:
            return self._fields

    @property
    def samples(self) -> Tuple[CaptureSample, ...]:
        with self._lock:
            return tuple(self._samples)

    @property
    def sample_count(self) -> int:
        with self._lock:
            return len(self._samples)

    @property
    def progress(self) -> float:
        return self.sample_count / float(self.target)

    def wait_complete(self, timeout: Optional[float] = None) -> bool:
        return self._complete.wait(timeout)


    def start(self, fields: IdentityFields) -> None:
        """
        Begin a new capture session.

        Raises InvalidInput if name or external reference is empty (no
        state change) and CaptureStateError unless the controller is Idle.
        """
        if fields is None or not fields.is_complete():
            raise InvalidInput("Both display_name and external_ref are required to start capture.")

        with self._lock:
            if self._state is not CaptureState.IDLE:
                raise CaptureStateError(
                    f"start() requires state Idle, current state is {self._state.value}."
                )
            self._fields = fields.cleaned()
            self._samples = []
            self._aborted = False
            self._complete.clear()
            self._session += 1
            self._state = CaptureState.CAPTURING
            self._ticker = self._ticker_factory(self.interval_sec, self.tick, "capture-ticker")
            self._ticker.start()
            external_ref = self._fields.external_ref

        logger.info(
            "Capture started for external_ref=%s (target=%d).",
            external_ref,
            self.target,
        )

    def tick(self) -> bool:
        """
        Acquire one sample. Returns True if a sample was stored.

        No-op outside Capturing. A missing frame (or a camera error) skips
        this tick without counting. A frame that arrives after the session
        it was requested for ended (stop / reset / restart) is dropped.
        """
        with self._lock:
            if self._state is not CaptureState.CAPTURING:
                return False
            session = self._session

        try:
            frame = self.camera.get_frame()
        except Exception:
            logger.exception("Camera error during capture tick; skipping.")
            return False
        if frame is None:
            logger.debug("Capture tick skipped: no frame available.")
            return False

        sample = CaptureSample(frame=np.array(frame, copy=True))
        ticker = None
        with self._lock:
            if (
                self._session != session
                or self._state is not CaptureState.CAPTURING
                or len(self._samples) >= self.target
            ):
                return False
            self._samples.append(sample)
            count = len(self._samples)
            if count >= self.target:
                self._state = CaptureState.COMPLETE
                ticker, self._ticker = self._ticker, None
                self._complete.set()

        if ticker is not None:
            ticker.cancel()
            logger.info("Capture complete: %d/%d samples.", count, self.target)
        else:
            logger.debug("Captured sample %d/%d.", count, self.target)
        return True

    def stop(self) -> None:
        """
        Halt an in-progress capture and return to Idle.

        Partial samples are kept for inspection, but finalize() will still
        fail. Calling stop() outside Capturing does nothing.
        """
        with self._lock:
            if self._state is not CaptureState.CAPTURING:
                return
            self._state = CaptureState.IDLE
            self._aborted = True
            self._session += 1
            ticker, self._ticker = self._ticker, None
            count = len(self._samples)

        if ticker is not None:
            ticker.cancel()
        logger.info("Capture stopped with %d/%d samples.", count, self.target)

    def reset(self) -> None:
        """Discard everything and return to Idle. Valid from any state."""
        with self._lock:
            ticker, self._ticker = self._ticker, None
            prev = self._state
            self._state = CaptureState.IDLE
            self._session += 1
            self._samples = []
            self._fields = None
            self._aborted = False
            self._complete.clear()

        if ticker is not None:
            ticker.cancel()
        logger.info("Capture reset (previous state=%s).", prev.value)

    def finalize(self) -> EnrollmentPayload:
        """Return the ordered samples. Only valid once Complete."""
        with self._lock:
            if self._state is not CaptureState.COMPLETE:
                raise IncompleteCapture(
                    f"finalize() requires state Complete; state is {self._state.value} "
                    f"with {len(self._samples)}/{self.target} samples."
                )
            return EnrollmentPayload(fields=self._fields, samples=tuple(self._samples))
