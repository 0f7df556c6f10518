"""
identity/crypto.py

AES-GCM envelope for the encrypted gallery snapshot.

Blob layout: MAGIC (4) | VERSION (1) | NONCE (12) | ciphertext+tag

The key comes from an environment variable (hex, base64 or raw text);
anything that is not already 32 bytes is stretched with SHA-256.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import threading
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

_MAGIC = b"SIDG"  # SecureID Gallery
_VERSION = 1
_NONCE_LEN = 12
_KEY_LEN = 32
_TAG_LEN = 16

_HEADER_LEN = len(_MAGIC) + 1 + _NONCE_LEN

DEFAULT_KEY_ENV = "SECUREID_GALLERY_KEY"


class CryptoError(Exception):
    """Base class for gallery crypto errors."""


class CryptoKeyError(CryptoError):
    """Key missing from the environment or not decodable."""


class CryptoCiphertextError(CryptoError):
    """Ciphertext integrity problem (wrong key, corruption, bad JSON)."""


class CryptoVersionError(CryptoCiphertextError):
    """Header magic / version not understood by this code."""


_key_cache: Dict[str, bytes] = {}
_key_lock = threading.Lock()


def key_fingerprint(key: bytes) -> str:
    """Short, non-sensitive fingerprint for logs (first 8 hex chars of SHA256)."""
    return hashlib.sha256(key).hexdigest()[:8]


def clear_key_cache() -> None:
    with _key_lock:
        _key_cache.clear()


def decode_key(raw: str) -> bytes:
    """
    Decode an AES key from a string.

    Accepts 32/48/64 hex chars, strict base64, or raw UTF-8 text.
    """
    s = raw.strip()
    if not s:
        raise CryptoKeyError("Empty AES key.")

    key = b""
    if len(s) in (32, 48, 64) and all(c in "0123456789abcdefABCDEF" for c in s):
        key = bytes.fromhex(s)
    if not key:
        try:
            key = base64.b64decode(s, validate=True)
        except ValueError:
            key = s.encode("utf-8")

    if len(key) != _KEY_LEN:
        key = hashlib.sha256(key).digest()
    return key


def load_key_from_env(env_var: str = DEFAULT_KEY_ENV) -> bytes:
    """
    Load and cache the AES key from an environment variable.

    Raises CryptoKeyError if the variable is missing.
    """
    with _key_lock:
        if env_var in _key_cache:
            return _key_cache[env_var]

        raw = os.getenv(env_var)
        if not raw:
            raise CryptoKeyError(
                f"Encryption key environment variable '{env_var}' is not set. "
                "Generate a strong random key and set it, e.g.:\n"
                f"  export {env_var}=\"$(openssl rand -hex 32)\""
            )
        key = decode_key(raw)
        _key_cache[env_var] = key

    logger.info("Loaded AES key from env var '%s' (fp=%s).", env_var, key_fingerprint(key))
    return key


def encrypt_json(obj: Any, *, key: Optional[bytes] = None, env_var: str = DEFAULT_KEY_ENV) -> bytes:
    """Serialize an object as compact JSON, then AES-GCM encrypt it."""
    if key is None:
        key = load_key_from_env(env_var)
    plaintext = json.dumps(obj, separators=(",", ":")).encode("utf-8")
    nonce = os.urandom(_NONCE_LEN)
    ct = AESGCM(key).encrypt(nonce, plaintext, _MAGIC)
    return _MAGIC + bytes([_VERSION]) + nonce + ct


def decrypt_json(blob: bytes, *, key: Optional[bytes] = None, env_var: str = DEFAULT_KEY_ENV) -> Any:
    """
    Decrypt a blob produced by encrypt_json and parse the JSON inside.

    Raises:
      - CryptoKeyError        : key cannot be loaded.
      - CryptoVersionError    : header/version is incompatible.
      - CryptoCiphertextError : authentication fails or payload is not JSON.
    """
    if len(blob) < _HEADER_LEN + _TAG_LEN:
        raise CryptoCiphertextError("Ciphertext too short to be valid.")
    if blob[: len(_MAGIC)] != _MAGIC:
        raise CryptoVersionError("Invalid ciphertext magic header.")
    version = blob[len(_MAGIC)]
    if version != _VERSION:
        raise CryptoVersionError(
            f"Unsupported ciphertext version {version}; this code expects version={_VERSION}."
        )

    if key is None:
        key = load_key_from_env(env_var)

    offset = len(_MAGIC) + 1
    nonce = blob[offset: offset + _NONCE_LEN]
    ct = blob[offset + _NONCE_LEN:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ct, _MAGIC)
    except InvalidTag as exc:
        raise CryptoCiphertextError(
            "Decryption failed or authentication tag invalid "
            f"(possible key mismatch or corrupted file; key_fp={key_fingerprint(key)})."
        ) from exc

    try:
        return json.loads(plaintext.decode("utf-8"))
    except ValueError as exc:
        raise CryptoCiphertextError(f"Decrypted data is not valid JSON: {exc}") from exc
