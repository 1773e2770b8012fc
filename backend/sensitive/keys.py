"""Key providers for SSN encryption and lookup hashing.

Keys are resolved into immutable provider objects that are passed to the
encryption and lookup functions explicitly.  When a caller passes nothing,
the process-wide defaults built from ``config.get_settings()`` are used.

ENCRYPTION_KEY must be base64 of exactly 32 bytes.  When it is absent, a
publicly known development key is derived with scrypt and an
``InsecureKeyWarning`` is raised through ``warnings`` as well as logged.

SSN_HMAC_KEY is opaque text used directly as HMAC key material.  When it is
absent, ``MissingKeyError`` is raised: a guessable lookup key would let anyone
enumerate SSNs against stored digests.
"""

from __future__ import annotations

import base64
import binascii
import logging
import warnings

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from config import Settings, get_settings
from sensitive.errors import InsecureKeyWarning, InvalidKeyError, MissingKeyError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # 256 bits

# Public development key parameters.  Matches the deployed dev databases.
_DEV_PASSPHRASE = b"dev-key-for-testing-only"
_DEV_SALT = b"salt"
_DEV_SCRYPT_N = 2**14
_DEV_SCRYPT_R = 8
_DEV_SCRYPT_P = 1


class EncryptionKeyProvider:
    """Holds the 256-bit AES-GCM key used for the encrypted SSN column."""

    __slots__ = ("_key", "_insecure")

    def __init__(self, key: bytes, *, insecure: bool = False) -> None:
        if len(key) != KEY_LENGTH:
            raise InvalidKeyError(
                f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}"
            )
        self._key = bytes(key)
        self._insecure = insecure

    @property
    def key(self) -> bytes:
        return self._key

    @property
    def insecure(self) -> bool:
        """True when this is the public development key."""
        return self._insecure

    @classmethod
    def from_encoded(cls, value: str) -> EncryptionKeyProvider:
        """Build a provider from a base64-encoded 32-byte key."""
        try:
            raw = base64.b64decode(value.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidKeyError("ENCRYPTION_KEY is not valid base64") from exc
        return cls(raw)

    @classmethod
    def development(cls) -> EncryptionKeyProvider:
        """Derive the fixed, publicly known development key.

        Never reachable when ENCRYPTION_KEY is configured.  The warning goes
        through ``warnings`` so it still surfaces when logging is disabled.
        """
        message = (
            "ENCRYPTION_KEY is not set; using the public development key. "
            "Encrypted SSNs are NOT protected; never run like this in production."
        )
        warnings.warn(message, InsecureKeyWarning, stacklevel=2)
        logger.warning(message)
        kdf = Scrypt(
            salt=_DEV_SALT,
            length=KEY_LENGTH,
            n=_DEV_SCRYPT_N,
            r=_DEV_SCRYPT_R,
            p=_DEV_SCRYPT_P,
        )
        return cls(kdf.derive(_DEV_PASSPHRASE), insecure=True)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> EncryptionKeyProvider:
        settings = settings or get_settings()
        if settings.encryption_key:
            return cls.from_encoded(settings.encryption_key)
        return cls.development()

    def __repr__(self) -> str:
        return f"EncryptionKeyProvider(insecure={self._insecure})"


class LookupKeyProvider:
    """Holds the HMAC key for SSN lookup digests."""

    __slots__ = ("_key",)

    def __init__(self, key: str | bytes | None) -> None:
        if not key:
            raise MissingKeyError(
                "SSN_HMAC_KEY is required. Set the SSN_HMAC_KEY environment "
                "variable before starting the app or running migrations."
            )
        self._key = key.encode("utf-8") if isinstance(key, str) else bytes(key)

    @property
    def key(self) -> bytes:
        return self._key

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> LookupKeyProvider:
        settings = settings or get_settings()
        return cls(settings.ssn_hmac_key)

    def __repr__(self) -> str:
        return "LookupKeyProvider()"


# ─── Process defaults ────────────────────────────────────────────────────────

_encryption_keys: EncryptionKeyProvider | None = None
_lookup_keys: LookupKeyProvider | None = None


def default_encryption_keys() -> EncryptionKeyProvider:
    """Return the process-wide encryption key provider, resolving it once."""
    global _encryption_keys
    if _encryption_keys is None:
        _encryption_keys = EncryptionKeyProvider.from_settings()
    return _encryption_keys


def default_lookup_keys() -> LookupKeyProvider:
    """Return the process-wide lookup key provider.

    Raises MissingKeyError on first use if SSN_HMAC_KEY is not configured.
    A failed resolution is not cached, so fixing the configuration and
    calling ``reset_default_keys()`` is enough to recover.
    """
    global _lookup_keys
    if _lookup_keys is None:
        _lookup_keys = LookupKeyProvider.from_settings()
    return _lookup_keys


def reset_default_keys() -> None:
    """Forget the cached providers so the next use re-reads configuration."""
    global _encryption_keys, _lookup_keys
    _encryption_keys = None
    _lookup_keys = None
    get_settings.cache_clear()
