from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

DEFAULT_TASK_PROMPT = (
    "Analyze this image for a biometric security system (Face Liveness Detection). "
    "Determine if the face in the image is a real person present in front of the "
    "camera (\"Live\"), or a presentation attack such as a photo displayed on a "
    "screen, a printed paper mask, or a deepfake (\"Spoof\"). "
    "Provide a JSON response with keys isReal (boolean), confidence (number "
    "between 0 and 1) and reason (brief explanation of the visual cues used)."
)

DEFAULT_FALLBACK_REASON = "System error during liveness check."


@dataclass
class CameraConfig:
    index: int = 0
    width: int = 640
    height: int = 360
    fps: int = 30
    read_timeout_sec: float = 1.0


@dataclass
class PathsConfig:
    logs_dir: str = "logs"
    data_dir: str = "data"


@dataclass
class CaptureConfig:
    """Enrollment capture cadence and hard sample target."""
    target: int = 20
    interval_ms: int = 200


@dataclass
class LivenessConfig:
    """
    Liveness gate + classifier service settings.

    threshold is strict: a verdict is live only if confidence > threshold.
    """
    endpoint: str = "http://127.0.0.1:8088/v1/liveness"
    threshold: float = 0.6
    timeout_sec: float = 10.0
    task_prompt: str = DEFAULT_TASK_PROMPT
    fallback_reason: str = DEFAULT_FALLBACK_REASON
    api_key_env: str = "SECUREID_LIVENESS_API_KEY"
    jpeg_quality: int = 90


@dataclass
class MatchingConfig:
    """
    KNN classification policy.

    metric is fixed for the lifetime of a gallery:
      - "euclidean": plain L2 distance (default)
      - "cosine"   : 1 - cosine similarity
    dim = 0 means "fixed by the first enrollment".
    """
    k: int = 5
    max_distance: float = 0.9
    metric: str = "euclidean"
    dim: int = 0


@dataclass
class GalleryConfig:
    path: str = "data/gallery.json"
    encrypted: bool = False
    key_env_var: str = "SECUREID_GALLERY_KEY"


@dataclass
class RuntimeConfig:
    log_level: str = "INFO"
    workers: int = 1


@dataclass
class Config:
    camera: CameraConfig = field(default_factory=CameraConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    gallery: GalleryConfig = field(default_factory=GalleryConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)


def default_config() -> Config:
    """Config with all defaults, no file needed (tests, library use)."""
    return Config()


def _update_dataclass_from_dict(obj: Any, data: Dict[str, Any]) -> Any:
    """
    Assign only known fields from dict into dataclass instance.
    Unknown keys in YAML are ignored (backwards-compatible).
    """
    for k, v in data.items():
        if hasattr(obj, k):
            setattr(obj, k, v)
        else:
            logger.debug("Ignoring unknown config key '%s' for %s", k, type(obj).__name__)
    return obj


def _validate(cfg: Config) -> None:
    if int(cfg.capture.target) <= 0:
        raise ValueError(f"capture.target must be positive, got {cfg.capture.target}")
    if int(cfg.capture.interval_ms) <= 0:
        raise ValueError(f"capture.interval_ms must be positive, got {cfg.capture.interval_ms}")
    if not 0.0 <= float(cfg.liveness.threshold) <= 1.0:
        raise ValueError(f"liveness.threshold must be in [0,1], got {cfg.liveness.threshold}")
    if int(cfg.matching.k) <= 0:
        raise ValueError(f"matching.k must be positive, got {cfg.matching.k}")
    if float(cfg.matching.max_distance) < 0.0:
        raise ValueError(f"matching.max_distance must be >= 0, got {cfg.matching.max_distance}")
    if cfg.matching.metric not in ("euclidean", "cosine"):
        raise ValueError(
            f"matching.metric must be 'euclidean' or 'cosine', got {cfg.matching.metric!r}"
        )


def load_config(path: str | Path = "config/default.yaml") -> Config:
    """
    Load YAML config and map it to our dataclasses.

    This function is the single source of truth for all configuration sections:
      - cfg.camera
      - cfg.paths
      - cfg.capture
      - cfg.liveness
      - cfg.matching
      - cfg.gallery
      - cfg.runtime
    Missing sections keep their defaults.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config root must be a dict, got: {type(raw)}")

    cfg = Config()
    for section in ("camera", "paths", "capture", "liveness", "matching", "gallery", "runtime"):
        data = raw.get(section, {}) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config section '{section}' must be a dict, got: {type(data)}")
        _update_dataclass_from_dict(getattr(cfg, section), data)

    _validate(cfg)

    logger.info(
        "Config loaded from %s | camera index=%d, capture target=%d every %dms, "
        "liveness threshold=%.2f, matching k=%d max_distance=%.3f metric=%s, "
        "gallery encrypted=%s",
        path,
        cfg.camera.index,
        cfg.capture.target,
        cfg.capture.interval_ms,
        cfg.liveness.threshold,
        cfg.matching.k,
        cfg.matching.max_distance,
        cfg.matching.metric,
        cfg.gallery.encrypted,
    )
    return cfg
