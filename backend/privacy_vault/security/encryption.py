"""Encryption at rest for stored chunk and message text.

Text is sealed with AES-256-GCM under a key derived per data subject
(HKDF-SHA256 over the vault master key). The owning row id is bound as
associated data, so a ciphertext moved onto another row does not open.

Blob layout: one version byte, a 12 byte nonce, then ciphertext plus tag.
"""

from __future__ import annotations

import os
import secrets
import threading
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from privacy_vault.core.errors import IntegrityFailure
from privacy_vault.core.logging import get_logger

logger = get_logger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12
BLOB_VERSION = 1
_SUBJECT_INFO = b"privacy-vault/subject-key/v1:"


def load_or_create_master_key(path: Path) -> bytes:
    """Read the 32 byte master key, generating it (mode 0600) on first start."""
    path = path.expanduser()
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            pass
        else:
            with os.fdopen(fd, "wb") as fh:
                fh.write(secrets.token_bytes(KEY_BYTES))
            logger.info("Generated vault master key", extra={"ctx_path": str(path)})
    key = path.read_bytes()
    if len(key) != KEY_BYTES:
        raise ValueError(f"Master key at {path} must be {KEY_BYTES} bytes (AES-256)")
    return key


class TextCipher:
    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != KEY_BYTES:
            raise ValueError(f"Master key must be {KEY_BYTES} bytes (AES-256)")
        self._master_key = master_key
        self._subject_keys: dict[str, AESGCM] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_key_file(cls, path: Path) -> "TextCipher":
        return cls(load_or_create_master_key(path))

    def encrypt(self, subject_id: str, plaintext: str, associated_data: str) -> bytes:
        nonce = secrets.token_bytes(NONCE_BYTES)
        sealed = self._aead(subject_id).encrypt(nonce, plaintext.encode("utf-8"), associated_data.encode("utf-8"))
        return bytes([BLOB_VERSION]) + nonce + sealed

    def decrypt(self, subject_id: str, blob: bytes, associated_data: str) -> str:
        if not blob or blob[0] != BLOB_VERSION:
            raise IntegrityFailure("Stored text uses an unknown encryption format")
        nonce = blob[1 : 1 + NONCE_BYTES]
        try:
            plaintext = self._aead(subject_id).decrypt(nonce, blob[1 + NONCE_BYTES :], associated_data.encode("utf-8"))
        except InvalidTag as exc:
            raise IntegrityFailure(f"Stored text for '{associated_data}' failed authentication") from exc
        return plaintext.decode("utf-8")

    def _aead(self, subject_id: str) -> AESGCM:
        with self._lock:
            aead = self._subject_keys.get(subject_id)
            if aead is None:
                key = HKDF(
                    algorithm=hashes.SHA256(),
                    length=KEY_BYTES,
                    salt=None,
                    info=_SUBJECT_INFO + subject_id.encode("utf-8"),
                ).derive(self._master_key)
                aead = AESGCM(key)
                self._subject_keys[subject_id] = aead
            return aead


__all__ = ["TextCipher", "load_or_create_master_key"]
