"""
Session-at-rest encryption.

AES-256-GCM via the ``cryptography`` library. The key is the sha256 of an
externally supplied secret. Encrypted documents are stored as an envelope:

    {"encrypted": true, "version": 1, "nonce": "<b64>", "ciphertext": "<b64>"}

Any failure to open an envelope is a SessionCorruptError.
"""
import base64
import binascii
import hashlib
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from forge_engine.exceptions import SessionCorruptError

ENVELOPE_VERSION = 1
NONCE_BYTES = 12


def derive_key(secret: str) -> bytes:
    if not secret:
        raise ValueError("encryption secret must be non-empty")
    return hashlib.sha256(secret.encode("utf-8")).digest()


def is_envelope(data: Any) -> bool:
    return isinstance(data, dict) and data.get("encrypted") is True and "ciphertext" in data


class SessionCipher:
    """Encrypts and decrypts session documents."""

    def __init__(self, secret: str):
        self._aead = AESGCM(derive_key(secret))

    def encrypt(self, document: dict[str, Any], session_id: str) -> dict[str, Any]:
        nonce = os.urandom(NONCE_BYTES)
        plaintext = json.dumps(document, separators=(",", ":")).encode("utf-8")
        # Session id is bound as associated data so envelopes can't be swapped between files
        ciphertext = self._aead.encrypt(nonce, plaintext, session_id.encode("utf-8"))
        return {
            "encrypted": True,
            "version": ENVELOPE_VERSION,
            "nonce": base64.b64encode(nonce).decode("ascii"),
            "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        }

    def decrypt(self, envelope: dict[str, Any], session_id: str) -> dict[str, Any]:
        if envelope.get("version") != ENVELOPE_VERSION:
            raise SessionCorruptError(
                f"Unsupported envelope version {envelope.get('version')!r}",
                session_id=session_id,
            )
        try:
            nonce = base64.b64decode(envelope["nonce"], validate=True)
            ciphertext = base64.b64decode(envelope["ciphertext"], validate=True)
            plaintext = self._aead.decrypt(nonce, ciphertext, session_id.encode("utf-8"))
            return json.loads(plaintext)
        except (InvalidTag, KeyError, ValueError, binascii.Error) as e:
            raise SessionCorruptError(
                f"Failed to decrypt session {session_id}: {type(e).__name__}",
                session_id=session_id,
            ) from e
