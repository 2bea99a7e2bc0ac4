"""
Encryption layer — at-rest protection for snapshot leaves.

Items flagged ``encrypt`` are written as a binary envelope:

    MAGIC(4) | algorithm_id(1) | nonce(12) | ciphertext | tag(16)

Algorithm 1: AES-256-GCM, key from PBKDF2-SHA256 over the run
passphrase and the snapshot's salt. The magic and algorithm id are
bound into the GCM associated data, so a tampered header fails
authentication like tampered ciphertext does. New algorithms get new
ids; old snapshots stay readable.

Keys are derived once per (key id, salt, iterations) and cached until
``clear()``. The cache is the only state extractors share, and a single
lock guards every read and write of it.
"""

from __future__ import annotations

import base64
import logging
import os
import threading
from typing import Any, Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, ConfigDict

from confsnap.core.errors import DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

MAGIC = b"CSNP"
ALG_AES256_GCM_PBKDF2 = 1
SUPPORTED_ALGORITHMS = {ALG_AES256_GCM_PBKDF2}

SALT_LEN = 16
NONCE_LEN = 12
TAG_LEN = 16
KEY_LEN = 32
HEADER_LEN = len(MAGIC) + 1 + NONCE_LEN

DEFAULT_KDF_ITERATIONS = 480_000


class KeyReference(BaseModel):
    """Names the key material for a snapshot; never holds the key itself."""

    model_config = ConfigDict(frozen=True)

    key_id: str = "default"
    salt: bytes
    iterations: int = DEFAULT_KDF_ITERATIONS
    algorithm_id: int = ALG_AES256_GCM_PBKDF2

    @classmethod
    def generate(cls, iterations: int = DEFAULT_KDF_ITERATIONS, key_id: str = "default") -> KeyReference:
        """Fresh reference with a random salt, for a new snapshot."""
        return cls(key_id=key_id, salt=os.urandom(SALT_LEN), iterations=iterations)

    def to_manifest(self) -> dict[str, Any]:
        return {
            "key_id": self.key_id,
            "algorithm_id": self.algorithm_id,
            "kdf": "pbkdf2-sha256",
            "iterations": self.iterations,
            "salt": base64.b64encode(self.salt).decode("ascii"),
        }

    @classmethod
    def from_manifest(cls, data: dict[str, Any]) -> KeyReference:
        return cls(
            key_id=data.get("key_id", "default"),
            salt=base64.b64decode(data["salt"]),
            iterations=int(data.get("iterations", DEFAULT_KDF_ITERATIONS)),
            algorithm_id=int(data.get("algorithm_id", ALG_AES256_GCM_PBKDF2)),
        )


PassphraseSource = Callable[[], str | None]


class Encryptor:
    """Encrypts and decrypts envelopes with cached, lock-guarded keys.

    Args:
        passphrase: The passphrase, or a callable returning it. Called at
            most once per key reference, when a key is first needed.
    """

    def __init__(self, passphrase: str | PassphraseSource | None):
        if callable(passphrase):
            self._source: PassphraseSource = passphrase
        else:
            self._source = lambda: passphrase
        self._keys: dict[tuple[str, bytes, int], bytearray] = {}
        self._lock = threading.Lock()

    @property
    def cached_keys(self) -> int:
        with self._lock:
            return len(self._keys)

    def _key(self, ref: KeyReference) -> bytes:
        cache_key = (ref.key_id, ref.salt, ref.iterations)
        with self._lock:
            cached = self._keys.get(cache_key)
            if cached is not None:
                return bytes(cached)
            passphrase = self._source()
            if not passphrase:
                raise EncryptionError(
                    "No passphrase available for encrypted items "
                    "(set CONFSNAP_PASSPHRASE or pass one explicitly)"
                )
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=KEY_LEN,
                salt=ref.salt,
                iterations=ref.iterations,
            )
            key = bytearray(kdf.derive(passphrase.encode("utf-8")))
            self._keys[cache_key] = key
            logger.debug("Derived key '%s' (%d iterations)", ref.key_id, ref.iterations)
            return bytes(key)

    def encrypt(self, plaintext: bytes, ref: KeyReference) -> bytes:
        """Wrap ``plaintext`` in an envelope."""
        if ref.algorithm_id not in SUPPORTED_ALGORITHMS:
            raise EncryptionError(f"Unsupported algorithm id {ref.algorithm_id}")
        key = self._key(ref)
        nonce = os.urandom(NONCE_LEN)
        header = MAGIC + bytes([ref.algorithm_id]) + nonce
        try:
            sealed = AESGCM(key).encrypt(nonce, plaintext, header[: len(MAGIC) + 1])
        except Exception as e:
            raise EncryptionError(f"Encryption failed: {e}") from e
        return header + sealed

    def decrypt(self, envelope: bytes, ref: KeyReference) -> bytes:
        """Open an envelope; any failure is a DecryptionError."""
        if len(envelope) < HEADER_LEN + TAG_LEN or not envelope.startswith(MAGIC):
            raise DecryptionError("Not an encrypted envelope or envelope truncated")
        algorithm_id = envelope[len(MAGIC)]
        if algorithm_id not in SUPPORTED_ALGORITHMS:
            raise DecryptionError(f"Unknown envelope algorithm id {algorithm_id}")
        nonce = envelope[len(MAGIC) + 1 : HEADER_LEN]
        sealed = envelope[HEADER_LEN:]
        try:
            key = self._key(ref)
        except EncryptionError as e:
            raise DecryptionError(str(e)) from e
        try:
            return AESGCM(key).decrypt(nonce, sealed, envelope[: len(MAGIC) + 1])
        except InvalidTag as e:
            raise DecryptionError("Decryption failed: wrong passphrase or corrupted data") from e

    def clear(self) -> None:
        """Drop cached key material. Safe to call any number of times."""
        with self._lock:
            for key in self._keys.values():
                for i in range(len(key)):
                    key[i] = 0
            self._keys.clear()


def is_envelope(data: bytes) -> bool:
    """Cheap header check; does not authenticate."""
    return len(data) >= HEADER_LEN + TAG_LEN and data.startswith(MAGIC)
