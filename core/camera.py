"""
core/camera.py

Webcam frame source backed by OpenCV.

Responsibility:
  - Open a webcam with the configured resolution / fps.
  - Keep reading on a background thread so get_frame() always returns
    the newest frame instead of a stale buffered one.
  - Implement FrameSource for the capture controller (called every tick)
    and the verification orchestrator (called once per attempt).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

import cv2
import numpy as np

from .config import CameraConfig
from .interfaces import FrameSource

logger = logging.getLogger(__name__)


def open_camera(index: int = 0, width: int = 640, height: int = 360, fps: int = 30,
                mjpeg: bool = True) -> cv2.VideoCapture:
    """
    Open camera `index` and request the given mode.

    MJPEG usually gives lower latency on USB webcams. The driver buffer is
    kept at one frame so reads are as fresh as possible.
    """
    cap = cv2.VideoCapture(index)
    if mjpeg:
        cap.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*"MJPG"))
    cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
    cap.set(cv2.CAP_PROP_FPS, fps)
    cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
    return cap


class CameraSource(FrameSource):
    """
    Latest-frame webcam reader.

        with CameraSource.from_config(cfg.camera) as cam:
            frame = cam.get_frame()

    get_frame() returns a copy of the newest frame, waiting at most
    read_timeout seconds for the first one. It returns None when the
    camera has produced nothing for longer than read_timeout.
    """

    def __init__(self, index: int = 0, read_timeout: float = 1.0, **open_kw) -> None:
        self.index = index
        self.read_timeout = float(read_timeout)
        self.cap = open_camera(index, **open_kw)
        if not self.cap.isOpened():
            raise RuntimeError(f"Camera {index} not available")

        self._cond = threading.Condition()
        self._latest: Optional[np.ndarray] = None
        self._latest_ts = 0.0
        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.frames_read = 0
        self.read_failures = 0

    @classmethod
    def from_config(cls, cfg: CameraConfig) -> "CameraSource":
        return cls(
            cfg.index,
            read_timeout=cfg.read_timeout_sec,
            width=cfg.width,
            height=cfg.height,
            fps=cfg.fps,
        )

    def start(self) -> None:
        if self._running.is_set():
            return
        self._running.set()
        self._thread = threading.Thread(target=self._reader, name=f"camera-{self.index}", daemon=True)
        self._thread.start()
        logger.info("Camera %d reader started.", self.index)

    def _reader(self) -> None:
        while self._running.is_set():
            ok, frame = self.cap.read()
            if not ok or frame is None:
                self.read_failures += 1
                time.sleep(0.01)
                continue
            with self._cond:
                self._latest = frame
                self._latest_ts = time.monotonic()
                self.frames_read += 1
                self._cond.notify_all()

    def get_frame(self) -> Optional[np.ndarray]:
        deadline = time.monotonic() + self.read_timeout
        with self._cond:
            while self._latest is None or time.monotonic() - self._latest_ts > self.read_timeout:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)
            return self._latest.copy()

    def stop(self) -> None:
        self._running.clear()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        self.cap.release()
        logger.info(
            "Camera %d released (frames=%d, failed reads=%d).",
            self.index,
            self.frames_read,
            self.read_failures,
        )

    def __enter__(self) -> "CameraSource":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
