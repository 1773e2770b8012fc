"""AES-256-GCM encryption for SSNs stored in the legacy ``users.ssn`` column.

Every value is stored as one opaque base64 blob::

    nonce (16 bytes) || ciphertext (len(utf8(plaintext)) bytes) || tag (16 bytes)

A fresh random nonce is drawn for every call, so encrypting the same SSN
twice never yields the same blob.  Decryption needs nothing but the blob and
the key.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sensitive.errors import AuthenticationError, DecodeError, MalformedBlobError
from sensitive.keys import EncryptionKeyProvider, default_encryption_keys

NONCE_LENGTH = 16  # 128 bits
TAG_LENGTH = 16  # 128 bits
MIN_BLOB_LENGTH = NONCE_LENGTH + TAG_LENGTH

_AUTH_FAILED = "Encrypted value failed authentication"


def encrypt_sensitive_data(
    plaintext: str, keys: EncryptionKeyProvider | None = None
) -> str:
    """Encrypt a string and return ``base64(nonce || ciphertext || tag)``."""
    keys = keys or default_encryption_keys()
    # os.urandom raises if the OS CSPRNG is unavailable; there is no fallback.
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(keys.key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_sensitive_data(
    blob: str, keys: EncryptionKeyProvider | None = None
) -> str:
    """Decrypt a blob produced by ``encrypt_sensitive_data``.

    Raises:
        DecodeError: the blob is not valid base64.
        MalformedBlobError: the decoded bytes cannot hold a nonce and a tag.
        AuthenticationError: tampered data or the wrong key.  A blob that
            only fails to decode because its final character was altered
            is tampered data, not a decoding problem.
    """
    keys = keys or default_encryption_keys()
    try:
        combined = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as exc:
        if _final_character_corrupted(blob):
            raise AuthenticationError(_AUTH_FAILED) from None
        raise DecodeError("Encrypted value is not valid base64") from exc

    if len(combined) < MIN_BLOB_LENGTH:
        raise MalformedBlobError(
            f"Encrypted value is {len(combined)} bytes; at least "
            f"{MIN_BLOB_LENGTH} are required"
        )

    nonce, sealed = combined[:NONCE_LENGTH], combined[NONCE_LENGTH:]
    try:
        plaintext = AESGCM(keys.key).decrypt(nonce, sealed, None)
    except InvalidTag:
        raise AuthenticationError(_AUTH_FAILED) from None

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError("Decrypted value is not UTF-8") from exc


def is_encrypted_blob(value: str, keys: EncryptionKeyProvider | None = None) -> bool:
    """Return True only if ``value`` decrypts under ``keys``."""
    try:
        decrypt_sensitive_data(value, keys)
    except (DecodeError, MalformedBlobError, AuthenticationError):
        return False
    return True


def _final_character_corrupted(blob: str) -> bool:
    """True if ``blob`` decodes to a full-size blob once its last character is padding again.

    A blob whose length leaves two bytes of padding ends in ``==``; changing
    the final ``=`` breaks the base64 framing rather than the tag.
    """
    if not isinstance(blob, str) or not blob:
        return False
    try:
        restored = base64.b64decode(blob[:-1] + "=", validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(restored) >= MIN_BLOB_LENGTH
