"""
identity/gallery.py

In-memory embedding gallery with exact k-NN search and KNN
(majority-vote) classification.

Responsibilities:
  - Own every enrolled Identity and its reference embeddings.
  - Enforce external_ref uniqueness and one embedding dimension for the
    whole gallery (the first enrollment fixes it unless configured).
  - Answer nearest_neighbors() / classify() queries for verification.
  - Produce / restore a plain-data snapshot for a GalleryStore.

Distance metric is fixed per gallery instance:
  - "euclidean": d = ||q - e||_2            (default, d >= 0, 0 for equal vectors)
  - "cosine"   : d = 1 - cos(q, e), in [0, 2]

Concurrency:
  Enrollment is the only mutator. Every mutation builds the new
  embedding matrix and owner table first and swaps them in under the
  lock in one step, so readers never observe a half-inserted identity.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from core.config import MatchingConfig
from core.errors import (
    DimensionMismatch,
    DuplicateIdentity,
    EmptyGallery,
    InvalidInput,
)
from core.imaging import decode_jpeg_b64, encode_jpeg_b64
from schemas import (
    GalleryStats,
    Identity,
    IdentityFields,
    IdentitySummary,
    MatchResult,
    Neighbor,
)

logger = logging.getLogger(__name__)

METRICS = ("euclidean", "cosine")

SNAPSHOT_VERSION = 1


class EmbeddingGallery:
    """
    Enrolled identities + exact nearest-neighbour search (NumPy).

    Usage:
        gallery = EmbeddingGallery.from_config(cfg.matching)
        ident = gallery.enroll(IdentityFields("Jane Doe", "2024001"), vectors)
        match = gallery.classify(query, k=5, max_distance=0.9)
    """

    def __init__(self, metric: str = "euclidean", dim: Optional[int] = None) -> None:
        if metric not in METRICS:
            raise ValueError(f"Unsupported metric {metric!r}; expected one of {METRICS}.")
        if dim is not None and int(dim) <= 0:
            dim = None

        self._metric = metric
        self._dim: Optional[int] = int(dim) if dim is not None else None

        self._lock = threading.RLock()
        self._identities: Dict[str, Identity] = {}
        self._by_ref: Dict[str, str] = {}

        # Row i of _matrix belongs to _owners[i] = (identity_id, embedding_index).
        self._matrix: Optional[np.ndarray] = None
        self._owners: List[Tuple[str, int]] = []

        logger.info("EmbeddingGallery initialised | metric=%s dim=%s", metric, self._dim)

    @classmethod
    def from_config(cls, cfg: MatchingConfig) -> "EmbeddingGallery":
        return cls(metric=cfg.metric, dim=cfg.dim or None)


    @property
    def metric(self) -> str:
        return self._metric

    @property
    def dim(self) -> Optional[int]:
        return self._dim

    def __len__(self) -> int:
        with self._lock:
            return len(self._identities)

    def __contains__(self, identity_id: object) -> bool:
        with self._lock:
            return identity_id in self._identities

    def identities(self) -> List[Identity]:
        """Enumerate enrolled identities in enrollment order."""
        with self._lock:
            return list(self._identities.values())

    def get(self, identity_id: str) -> Optional[Identity]:
        with self._lock:
            return self._identities.get(identity_id)

    def find_by_external_ref(self, external_ref: str) -> Optional[Identity]:
        with self._lock:
            iid = self._by_ref.get((external_ref or "").strip())
            return self._identities.get(iid) if iid is not None else None

    def list_identities(self) -> List[IdentitySummary]:
        return [ident.summary() for ident in self.identities()]

    def recent(self, n: int = 5) -> List[IdentitySummary]:
        """Most recently enrolled identities, newest first."""
        if n <= 0:
            return []
        return [ident.summary() for ident in reversed(self.identities()[-n:])]

    def stats(self) -> GalleryStats:
        with self._lock:
            return GalleryStats(
                identities=len(self._identities),
                total_samples=len(self._owners),
                dim=self._dim,
                metric=self._metric,
            )


    def enroll(
        self,
        fields: IdentityFields,
        embeddings: Sequence[np.ndarray],
        reference_sample: Optional[np.ndarray] = None,
        *,
        identity_id: Optional[str] = None,
        enrolled_at: Optional[datetime] = None,
        persist: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Identity:
        """
        Insert one identity with its ordered reference embeddings.

        Raises
        ------
        InvalidInput       : empty name / external_ref, or no embeddings.
        DuplicateIdentity  : external_ref already enrolled.
        DimensionMismatch  : any vector disagrees with the gallery dimension
                             (or with the other vectors of this call).

        persist, if given, receives the snapshot (to_records() format) that
        includes the new identity, before it becomes visible. If persist
        raises, the exception propagates and nothing is committed.

        The gallery is unchanged whenever an exception is raised.
        """
        fields = fields.cleaned()
        if not fields.is_complete():
            raise InvalidInput("Both display_name and external_ref are required.")
        if embeddings is None or len(embeddings) == 0:
            raise InvalidInput("enroll requires at least one embedding.")

        vectors = [self._as_vector(e) for e in embeddings]
        call_dim = vectors[0].size
        for v in vectors[1:]:
            if v.size != call_dim:
                raise DimensionMismatch(call_dim, v.size)

        with self._lock:
            if fields.external_ref in self._by_ref:
                raise DuplicateIdentity(fields.external_ref)
            if self._dim is not None and call_dim != self._dim:
                raise DimensionMismatch(self._dim, call_dim)

            identity = Identity(
                id=identity_id or uuid.uuid4().hex,
                display_name=fields.display_name,
                external_ref=fields.external_ref,
                embeddings=vectors,
                enrolled_at=enrolled_at or datetime.now(timezone.utc),
                reference_sample=reference_sample,
            )
            if identity.id in self._identities:
                raise InvalidInput(f"Identity id '{identity.id}' already in use.")

            new_rows = np.stack(vectors, axis=0)
            matrix = new_rows if self._matrix is None else np.vstack([self._matrix, new_rows])
            owners = self._owners + [(identity.id, i) for i in range(len(vectors))]

            identities = dict(self._identities)
            identities[identity.id] = identity
            by_ref = dict(self._by_ref)
            by_ref[identity.external_ref] = identity.id

            if persist is not None:
                persist(self._snapshot(list(identities.values()), call_dim))

            self._identities = identities
            self._by_ref = by_ref
            self._matrix = matrix
            self._owners = owners
            self._dim = call_dim

        logger.info(
            "Enrolled identity %s (external_ref=%s, samples=%d, gallery_size=%d).",
            identity.id,
            identity.external_ref,
            identity.sample_count,
            len(identities),
        )
        return identity


    def nearest_neighbors(self, query: np.ndarray, k: int) -> List[Neighbor]:
        """
        Return the k closest enrolled embeddings, ascending by distance.

        An identity may appear several times (one hit per embedding).
        k is clamped to the number of enrolled embeddings; ties keep
        enrollment order.
        """
        if int(k) <= 0:
            raise InvalidInput(f"k must be a positive integer, got {k}.")

        q = self._as_vector(query)
        with self._lock:
            matrix, owners, identities = self._matrix, self._owners, self._identities

        if matrix is None or not owners:
            raise EmptyGallery("No identities enrolled.")
        if q.size != matrix.shape[1]:
            raise DimensionMismatch(matrix.shape[1], q.size)

        dists = self._distances(matrix, q)
        k = min(int(k), dists.shape[0])
        order = np.argsort(dists, kind="stable")[:k]

        neighbours: List[Neighbor] = []
        for row in order:
            iid, emb_idx = owners[int(row)]
            neighbours.append(
                Neighbor(identity=identities[iid], distance=float(dists[row]), embedding_index=emb_idx)
            )
        return neighbours

    def classify(self, query: np.ndarray, k: int, max_distance: float) -> Optional[MatchResult]:
        """
        KNN classification with majority vote and a distance gate.

        1. Take the k nearest neighbours.
        2. Count votes per identity among them.
        3. Winner = most votes; a tie in votes goes to the identity whose
           closest contributing distance is smallest (then enrollment order).
        4. Accept the winner only if that closest distance <= max_distance.

        Returns the MatchResult, or None for "no match" (including an
        empty gallery, so verification never fabricates an identity).
        """
        if float(max_distance) < 0.0:
            raise InvalidInput(f"max_distance must be >= 0, got {max_distance}.")

        try:
            neighbours = self.nearest_neighbors(query, k)
        except EmptyGallery:
            logger.info("classify: gallery is empty -> no match.")
            return None

        with self._lock:
            enroll_order = {iid: i for i, iid in enumerate(self._identities)}

        votes: Dict[str, List[Any]] = {}
        for nb in neighbours:
            entry = votes.get(nb.identity.id)
            if entry is None:
                votes[nb.identity.id] = [1, nb.distance, nb.identity]
            else:
                entry[0] += 1
                entry[1] = min(entry[1], nb.distance)

        winner_id = min(
            votes,
            key=lambda iid: (-votes[iid][0], votes[iid][1], enroll_order.get(iid, len(enroll_order))),
        )
        count, best_dist, identity = votes[winner_id]

        if best_dist > float(max_distance):
            logger.info(
                "classify: winner %s (votes=%d/%d) rejected, distance %.4f > max %.4f.",
                winner_id,
                count,
                len(neighbours),
                best_dist,
                max_distance,
            )
            return None

        logger.info(
            "classify: matched %s (external_ref=%s, votes=%d/%d, distance=%.4f).",
            winner_id,
            identity.external_ref,
            count,
            len(neighbours),
            best_dist,
        )
        return MatchResult(identity, distance=best_dist, votes=count, k=len(neighbours))


    def to_records(self) -> Dict[str, Any]:
        """
        Plain-JSON-serialisable snapshot of the gallery.

        Each identity becomes {id, display_name, external_ref, enrolled_at,
        embeddings, reference_sample (base64 JPEG or null)}.
        """
        with self._lock:
            identities = list(self._identities.values())
            dim = self._dim
        return self._snapshot(identities, dim)

    def _snapshot(self, identities: List[Identity], dim: Optional[int]) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "metric": self._metric,
            "dim": dim,
            "identities": [identity_to_record(ident) for ident in identities],
        }

    def load_records(self, data: Dict[str, Any]) -> int:
        """
        Replace the gallery contents with a snapshot produced by to_records().

        The snapshot is validated in full (duplicate refs, dimensions) on a
        scratch gallery before anything is swapped in. Returns the number of
        identities loaded.
        """
        if not isinstance(data, dict):
            raise InvalidInput(f"Gallery snapshot must be a dict, got {type(data)}.")
        metric = data.get("metric", self._metric)
        if metric != self._metric:
            raise InvalidInput(
                f"Snapshot metric {metric!r} differs from gallery metric {self._metric!r}."
            )

        scratch = EmbeddingGallery(metric=self._metric, dim=self._dim)
        for rec in data.get("identities", []) or []:
            fields, vectors, ref_sample, iid, enrolled_at = identity_from_record(rec)
            scratch.enroll(fields, vectors, ref_sample, identity_id=iid, enrolled_at=enrolled_at)

        with self._lock:
            self._identities = scratch._identities
            self._by_ref = scratch._by_ref
            self._matrix = scratch._matrix
            self._owners = scratch._owners
            self._dim = scratch._dim

        logger.info("Gallery snapshot loaded (identities=%d).", len(scratch._identities))
        return len(scratch._identities)


    def _as_vector(self, embedding: np.ndarray) -> np.ndarray:
        """Float32 1-D copy; never pads or truncates."""
        vec = np.asarray(embedding, dtype=np.float32).reshape(-1).copy()
        if vec.size == 0:
            raise InvalidInput("Empty feature vector.")
        if not np.all(np.isfinite(vec)):
            raise InvalidInput("Feature vector contains NaN or Inf.")
        return vec

    def _distances(self, matrix: np.ndarray, q: np.ndarray) -> np.ndarray:
        if self._metric == "cosine":
            norms = np.linalg.norm(matrix, axis=1)
            qn = float(np.linalg.norm(q))
            denom = norms * qn
            sims = np.zeros(matrix.shape[0], dtype=np.float64)
            ok = denom > 1e-12
            sims[ok] = (matrix[ok] @ q) / denom[ok]
            return np.clip(1.0 - sims, 0.0, 2.0)
        diffs = matrix - q.reshape(1, -1)
        return np.sqrt(np.sum(diffs.astype(np.float64) ** 2, axis=1))


def identity_to_record(ident: Identity) -> Dict[str, Any]:
    ref = None
    if ident.reference_sample is not None:
        ref = encode_jpeg_b64(ident.reference_sample)
    return {
        "id": ident.id,
        "display_name": ident.display_name,
        "external_ref": ident.external_ref,
        "enrolled_at": ident.enrolled_at.isoformat(),
        "embeddings": [e.astype(float).tolist() for e in ident.embeddings],
        "reference_sample": ref,
    }


def identity_from_record(
    rec: Dict[str, Any],
) -> Tuple[IdentityFields, List[np.ndarray], Optional[np.ndarray], str, datetime]:
    try:
        fields = IdentityFields(str(rec["display_name"]), str(rec["external_ref"]))
        vectors = [np.asarray(e, dtype=np.float32) for e in rec["embeddings"]]
        iid = str(rec["id"])
        raw_ts = rec.get("enrolled_at")
        enrolled_at = datetime.fromisoformat(raw_ts) if raw_ts else datetime.now(timezone.utc)
        raw_ref = rec.get("reference_sample")
        ref_sample = decode_jpeg_b64(raw_ref)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise InvalidInput(f"Malformed identity record: {exc}") from exc

    if raw_ref and ref_sample is None:
        raise InvalidInput(f"Identity record {iid} carries an undecodable reference_sample.")
    return fields, vectors, ref_sample, iid, enrolled_at
