"""
liveness/client.py

HTTP client for the external liveness classifier.

Request  (POST, JSON):
    {"image": <base64 JPEG>, "mime_type": "image/jpeg", "task": <task description>}

Response (JSON):
    {"isReal": bool, "confidence": number in [0,1], "reason": str}

One attempt per call, no retries. Any transport problem, non-2xx status
or non-JSON body raises LivenessServiceError; the gate turns that into a
fail-closed spoof verdict.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional

import numpy as np
import requests

from core.config import LivenessConfig
from core.errors import LivenessServiceError
from core.imaging import encode_jpeg_b64
from core.interfaces import LivenessClassifier

logger = logging.getLogger(__name__)


class HttpLivenessClassifier(LivenessClassifier):
    def __init__(
        self,
        endpoint: str,
        task_prompt: str,
        timeout_sec: float = 10.0,
        api_key: Optional[str] = None,
        jpeg_quality: int = 90,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint = endpoint
        self.task_prompt = task_prompt
        self.timeout_sec = float(timeout_sec)
        self.jpeg_quality = int(jpeg_quality)
        self.session = session or requests.Session()
        self._api_key = api_key

    @classmethod
    def from_config(cls, cfg: LivenessConfig, session: Optional[requests.Session] = None) -> "HttpLivenessClassifier":
        api_key = os.getenv(cfg.api_key_env) if cfg.api_key_env else None
        if not api_key:
            logger.info("No liveness API key in env var '%s'; sending unauthenticated.", cfg.api_key_env)
        return cls(
            endpoint=cfg.endpoint,
            task_prompt=cfg.task_prompt,
            timeout_sec=cfg.timeout_sec,
            api_key=api_key,
            jpeg_quality=cfg.jpeg_quality,
            session=session,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def build_payload(self, frame: np.ndarray) -> Dict[str, Any]:
        return {
            "image": encode_jpeg_b64(frame, self.jpeg_quality),
            "mime_type": "image/jpeg",
            "task": self.task_prompt,
        }

    def classify(self, frame: np.ndarray) -> Mapping[str, Any]:
        try:
            payload = self.build_payload(frame)
        except ValueError as exc:
            raise LivenessServiceError(f"Could not encode frame: {exc}") from exc

        try:
            resp = self.session.post(
                self.endpoint,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout_sec,
            )
        except requests.Timeout as exc:
            raise LivenessServiceError(f"Liveness service timed out after {self.timeout_sec}s") from exc
        except requests.RequestException as exc:
            raise LivenessServiceError(f"Liveness service unreachable: {exc}") from exc

        if resp.status_code != 200:
            raise LivenessServiceError(
                f"Liveness service returned HTTP {resp.status_code}: {resp.text[:160]}"
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise LivenessServiceError(f"Liveness service returned non-JSON body: {exc}") from exc

        logger.debug("Liveness service answered: %s", body)
        return body
