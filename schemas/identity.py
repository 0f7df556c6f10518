from __future__ import annotations

import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import numpy as np


@dataclass(frozen=True)
class IdentityFields:
    """
    Enrollment form fields for a pending identity.

    display_name : human readable name (e.g. "Jane Doe")
    external_ref : student / employee number, unique across the gallery
    """

    display_name: str
    external_ref: str

    def cleaned(self) -> "IdentityFields":
        return IdentityFields(
            display_name=(self.display_name or "").strip(),
            external_ref=(self.external_ref or "").strip(),
        )

    def is_complete(self) -> bool:
        c = self.cleaned()
        return bool(c.display_name) and bool(c.external_ref)


@dataclass(eq=False)
class Identity:
    """
    One enrolled person, owned exclusively by the EmbeddingGallery.

    Fields:

      id               : opaque unique handle (uuid4 hex)
      display_name     : name shown to operators
      external_ref     : unique external number (student / employee id)
      enrolled_at      : UTC enrollment timestamp
      embeddings       : ordered reference feature vectors (float32, 1-D),
                         one per accepted capture sample
      reference_sample : optional image (BGR) shown next to a match;
                         by convention the first captured sample

    eq=False keeps identity semantics (and hashability) so a record can be
    the target of a weak reference held by a MatchResult.
    """

    id: str
    display_name: str
    external_ref: str
    embeddings: List[np.ndarray] = field(default_factory=list)
    enrolled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reference_sample: Optional[np.ndarray] = None

    @property
    def sample_count(self) -> int:
        return len(self.embeddings)

    def summary(self) -> "IdentitySummary":
        return IdentitySummary(
            id=self.id,
            display_name=self.display_name,
            external_ref=self.external_ref,
            enrolled_at=self.enrolled_at,
            sample_count=self.sample_count,
            has_reference_sample=self.reference_sample is not None,
        )


@dataclass(frozen=True)
class IdentitySummary:
    """
    Lightweight identity view for CLI / UI listing.

    We do NOT expose embeddings here, only high-level info.
    """

    id: str
    display_name: str
    external_ref: str
    enrolled_at: datetime
    sample_count: int
    has_reference_sample: bool

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "external_ref": self.external_ref,
            "enrolled_at": self.enrolled_at.isoformat(),
            "sample_count": self.sample_count,
            "has_reference_sample": self.has_reference_sample,
        }


@dataclass(frozen=True)
class Neighbor:
    """One k-NN hit: a single enrolled embedding and its distance."""

    identity: Identity
    distance: float
    embedding_index: int


class MatchResult:
    """
    Accepted KNN classification.

    Holds a weak (non-owning) reference to the matched Identity; the
    gallery stays the owner. Scalar copies of the display fields are kept
    so the result remains printable even if the record goes away.

    distance : closest distance among the winner's contributing neighbours
    votes    : how many of the k neighbours belonged to the winner
    k        : number of neighbours actually considered
    """

    __slots__ = ("_identity_ref", "identity_id", "display_name", "external_ref",
                 "distance", "votes", "k")

    def __init__(self, identity: Identity, distance: float, votes: int, k: int) -> None:
        self._identity_ref = weakref.ref(identity)
        self.identity_id = identity.id
        self.display_name = identity.display_name
        self.external_ref = identity.external_ref
        self.distance = float(distance)
        self.votes = int(votes)
        self.k = int(k)

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity_ref()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "display_name": self.display_name,
            "external_ref": self.external_ref,
            "distance": self.distance,
            "votes": self.votes,
            "k": self.k,
        }

    def __repr__(self) -> str:
        return (
            f"MatchResult(identity_id={self.identity_id!r}, distance={self.distance:.4f}, "
            f"votes={self.votes}/{self.k})"
        )


@dataclass(frozen=True)
class GalleryStats:
    """Dashboard figures: registered identities, total samples, readiness."""

    identities: int
    total_samples: int
    dim: Optional[int]
    metric: str

    @property
    def ready(self) -> bool:
        return self.identities > 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "identities": self.identities,
            "total_samples": self.total_samples,
            "dim": self.dim,
            "metric": self.metric,
            "ready": self.ready,
        }
