"""
identity/gallery_store.py

Persistence behind the gallery: save / load of the plain-data snapshot
produced by EmbeddingGallery.to_records().

Two stores:
  - JsonGalleryStore      : pretty JSON file (development, inspection)
  - EncryptedGalleryStore : AES-GCM encrypted JSON (production)

Both write atomically (tmp file + os.replace) so a crash never leaves a
truncated gallery on disk.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

from core.config import GalleryConfig
from core.errors import SecureIDError

from .crypto import DEFAULT_KEY_ENV, decrypt_json, encrypt_json
from .gallery import EmbeddingGallery

logger = logging.getLogger(__name__)


class GalleryStoreError(SecureIDError):
    """Snapshot file unreadable / not a gallery snapshot."""


class GalleryStore(ABC):
    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    @abstractmethod
    def _encode(self, records: Dict[str, Any]) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def _decode(self, blob: bytes) -> Dict[str, Any]:
        raise NotImplementedError

    def save(self, records: Dict[str, Any]) -> None:
        blob = self._encode(records)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("wb") as f:
            f.write(blob)
        os.replace(tmp_path, self.path)
        logger.info(
            "Gallery snapshot saved to %s (identities=%d).",
            self.path,
            len(records.get("identities", [])),
        )

    def load(self) -> Optional[Dict[str, Any]]:
        """Return the stored snapshot, or None if the file does not exist."""
        if not self.path.exists():
            return None
        with self.path.open("rb") as f:
            blob = f.read()
        records = self._decode(blob)
        if not isinstance(records, dict) or "identities" not in records:
            raise GalleryStoreError(f"{self.path} does not contain a gallery snapshot.")
        return records


class JsonGalleryStore(GalleryStore):
    def _encode(self, records: Dict[str, Any]) -> bytes:
        return json.dumps(records, indent=2).encode("utf-8")

    def _decode(self, blob: bytes) -> Dict[str, Any]:
        try:
            return json.loads(blob.decode("utf-8"))
        except ValueError as exc:
            raise GalleryStoreError(f"Invalid gallery JSON in {self.path}: {exc}") from exc


class EncryptedGalleryStore(GalleryStore):
    def __init__(
        self,
        path: Union[str, Path],
        env_var: str = DEFAULT_KEY_ENV,
        key: Optional[bytes] = None,
    ) -> None:
        super().__init__(path)
        self.env_var = env_var
        self._key = key

    def _encode(self, records: Dict[str, Any]) -> bytes:
        return encrypt_json(records, key=self._key, env_var=self.env_var)

    def _decode(self, blob: bytes) -> Dict[str, Any]:
        return decrypt_json(blob, key=self._key, env_var=self.env_var)


def store_from_config(cfg: GalleryConfig) -> GalleryStore:
    if cfg.encrypted:
        return EncryptedGalleryStore(cfg.path, env_var=cfg.key_env_var)
    return JsonGalleryStore(cfg.path)


def save_gallery(gallery: EmbeddingGallery, store: GalleryStore) -> None:
    store.save(gallery.to_records())


def load_gallery(gallery: EmbeddingGallery, store: GalleryStore) -> int:
    """
    Load a stored snapshot into the gallery. Returns identities loaded
    (0 when no file exists). Crypto / format errors propagate; the
    gallery is left untouched in that case.
    """
    records = store.load()
    if records is None:
        logger.info("No gallery snapshot at %s; starting empty.", store.path)
        return 0
    return gallery.load_records(records)
