"""
core/imaging.py

Image payload helpers shared by the liveness client and the gallery
snapshot: BGR frame <-> base64 JPEG.
"""

from __future__ import annotations

import base64
from typing import Optional

import cv2
import numpy as np


def encode_jpeg(frame: np.ndarray, quality: int = 90) -> bytes:
    """Encode a BGR frame as JPEG bytes."""
    arr = np.asarray(frame)
    if arr.ndim not in (2, 3) or arr.size == 0:
        raise ValueError(f"Cannot encode frame with shape {arr.shape} as JPEG.")
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    ok, buf = cv2.imencode(".jpg", arr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("cv2.imencode failed to produce a JPEG.")
    return buf.tobytes()


def encode_jpeg_b64(frame: np.ndarray, quality: int = 90) -> str:
    return base64.b64encode(encode_jpeg(frame, quality)).decode("ascii")


def decode_jpeg_b64(data: Optional[str]) -> Optional[np.ndarray]:
    """
    Decode a base64 JPEG (optionally with a data: URL prefix) to BGR.

    Returns None for empty input, invalid base64 or bytes that are not
    an image.
    """
    if not data:
        return None
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    try:
        raw = base64.b64decode(data, validate=True)
    except ValueError:
        return None
    if not raw:
        return None
    arr = np.frombuffer(raw, dtype=np.uint8)
    return cv2.imdecode(arr, cv2.IMREAD_COLOR)
