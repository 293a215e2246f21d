from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from helpdesk_sync.core.config import get_settings


class SecretDecryptionError(ValueError):
    """Raised when a stored mailbox secret cannot be decrypted."""


def _key() -> bytes:
    settings = get_settings()
    return hashlib.sha256(settings.totp_encryption_key.encode("utf-8")).digest()


def encrypt_secret(secret: str) -> str:
    """Encrypt ``secret`` with AES-GCM as ``iv:tag:ciphertext`` (base64 parts)."""

    iv = os.urandom(12)
    encryptor = Cipher(algorithms.AES(_key()), modes.GCM(iv)).encryptor()
    ciphertext = encryptor.update(secret.encode("utf-8")) + encryptor.finalize()
    return ":".join(
        (
            base64.b64encode(iv).decode("utf-8"),
            base64.b64encode(encryptor.tag).decode("utf-8"),
            base64.b64encode(ciphertext).decode("utf-8"),
        )
    )


def decrypt_secret(payload: str) -> str:
    # Legacy rows may hold the secret in plain text.
    if ":" not in payload:
        return payload
    try:
        iv_b64, tag_b64, data_b64 = payload.split(":")
        iv = base64.b64decode(iv_b64)
        tag = base64.b64decode(tag_b64)
        data = base64.b64decode(data_b64)
        decryptor = Cipher(algorithms.AES(_key()), modes.GCM(iv, tag)).decryptor()
        decrypted = decryptor.update(data) + decryptor.finalize()
    except (ValueError, binascii.Error, InvalidTag) as exc:
        raise SecretDecryptionError("Unable to decrypt mailbox secret") from exc
    return decrypted.decode("utf-8")
