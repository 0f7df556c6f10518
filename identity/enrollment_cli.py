from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from capture.controller import CaptureController
from core.camera import CameraSource
from core.config import Config, default_config, load_config
from core.errors import SecureIDError
from core.interfaces import Embedder
from core.logging_setup import setup_logging
from identity.crypto import CryptoError
from identity.enrollment import EnrollmentService
from identity.gallery import EmbeddingGallery
from identity.gallery_store import GalleryStore, load_gallery, store_from_config
from liveness.client import HttpLivenessClassifier
from liveness.gate import LivenessGate
from schemas import IdentityFields, IdentitySummary
from verification.orchestrator import VerificationOrchestrator

logger = logging.getLogger(__name__)


def _load_cfg(args: argparse.Namespace) -> Config:
    path = Path(args.config)
    if path.exists():
        cfg = load_config(path)
    else:
        cfg = default_config()
    setup_logging(cfg.paths.logs_dir, cfg.runtime.log_level)
    if not path.exists():
        logger.warning("Config file %s not found; using built-in defaults.", path)
    return cfg


def _open_gallery(cfg: Config) -> tuple[EmbeddingGallery, GalleryStore]:
    gallery = EmbeddingGallery.from_config(cfg.matching)
    store = store_from_config(cfg.gallery)
    load_gallery(gallery, store)
    return gallery, store


def _build_embedder() -> Embedder:
    # Heavy model import deferred so list / stats work without insightface installed.
    from face.embedder import InsightFaceEmbedder

    return InsightFaceEmbedder()


def _print_identities(identities: List[IdentitySummary]) -> None:
    if not identities:
        print("Gallery is empty.")
        return

    print(f"{'external_ref':<16} {'name':<28} {'samples':>7}  enrolled_at")
    print("-" * 80)
    for ident in identities:
        print(
            f"{ident.external_ref:<16} {ident.display_name:<28} {ident.sample_count:>7}  "
            f"{ident.enrolled_at.isoformat(timespec='seconds')}"
        )


def cmd_enroll(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    gallery, store = _open_gallery(cfg)

    name = args.name or input("Display name: ").strip()
    ref = args.ref or input("External reference (student / employee no.): ").strip()
    fields = IdentityFields(name, ref)

    if gallery.find_by_external_ref(ref) is not None:
        print(f"External reference '{ref}' is already enrolled.")
        return 1

    embedder = _build_embedder()
    with CameraSource.from_config(cfg.camera) as camera:
        controller = CaptureController(camera, cfg.capture)
        controller.start(fields)
        budget = cfg.capture.target * cfg.capture.interval_ms / 1000.0 * 5 + 5.0
        try:
            if not controller.wait_complete(timeout=budget):
                controller.stop()
                print(
                    f"Capture did not complete ({controller.sample_count}/{controller.target} samples); "
                    "nothing saved."
                )
                return 1
        except KeyboardInterrupt:
            controller.stop()
            print("Capture interrupted; nothing saved.")
            return 1

        identity = EnrollmentService(gallery, embedder, store).enroll_from_capture(controller)

    print(
        f"Enrolled '{identity.display_name}' ({identity.external_ref}) "
        f"with {identity.sample_count} samples."
    )
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    gallery, _ = _open_gallery(cfg)

    gate = LivenessGate(HttpLivenessClassifier.from_config(cfg.liveness), cfg.liveness)
    embedder = _build_embedder()
    timeout = cfg.liveness.timeout_sec + 5.0

    with CameraSource.from_config(cfg.camera) as camera, VerificationOrchestrator(
        camera, gate, embedder, gallery, cfg.matching, workers=cfg.runtime.workers
    ) as orch:
        attempt = orch.verify()
        verdict = attempt.wait_liveness(timeout=timeout)
        if verdict is None:
            print(f"Liveness: no verdict ({attempt.state.value}).")
            return 1
        print(
            f"Liveness: {'LIVE' if verdict.is_live else 'SPOOF'} "
            f"(confidence={verdict.confidence:.2f}) {verdict.reason}"
        )
        if not verdict.is_live:
            print("Presentation attack suspected; identification halted.")
            return 2

        match = attempt.wait_match(timeout=timeout)
        if attempt.error:
            print(f"Identification failed: {attempt.error}")
            return 1
        if match is None:
            print("No matching identity.")
            return 3
        print(
            f"Identified: {match.display_name} ({match.external_ref}) "
            f"distance={match.distance:.4f} votes={match.votes}/{match.k}"
        )
        if args.json:
            print(json.dumps(attempt.as_dict(), indent=2))
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    gallery, _ = _open_gallery(cfg)
    if args.recent:
        _print_identities(gallery.recent(args.recent))
    else:
        _print_identities(gallery.list_identities())
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    gallery, _ = _open_gallery(cfg)
    stats = gallery.stats()
    if args.json:
        print(json.dumps(stats.as_dict(), indent=2))
    else:
        print(f"Registered identities : {stats.identities}")
        print(f"Total face samples    : {stats.total_samples}")
        print(f"Embedding dim / metric: {stats.dim} / {stats.metric}")
        print(f"Model status          : {'Ready' if stats.ready else 'Waiting'}")
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="secureid",
        description="SecureID enrollment / verification CLI",
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config/default.yaml",
        help="Path to YAML config (defaults are used if missing)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    p_enroll = sub.add_parser("enroll", help="Capture samples via webcam and enroll an identity")
    p_enroll.add_argument("--name", type=str, default="", help="Display name")
    p_enroll.add_argument("--ref", type=str, default="", help="Unique external reference number")
    p_enroll.set_defaults(func=cmd_enroll)

    p_verify = sub.add_parser("verify", help="Run one liveness-gated verification attempt")
    p_verify.add_argument("--json", action="store_true", help="Also dump the attempt as JSON")
    p_verify.set_defaults(func=cmd_verify)

    p_list = sub.add_parser("list", help="List enrolled identities")
    p_list.add_argument("--recent", type=int, default=0, help="Only the N most recent, newest first")
    p_list.set_defaults(func=cmd_list)

    p_stats = sub.add_parser("stats", help="Gallery statistics")
    p_stats.add_argument("--json", action="store_true", help="Print as JSON")
    p_stats.set_defaults(func=cmd_stats)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except (SecureIDError, CryptoError) as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        print(f"Error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
