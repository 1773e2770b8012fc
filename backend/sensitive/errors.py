"""Error types for sensitive-field protection.

Callers branch on the exception class, never on the message text.
"""


class SensitiveDataError(Exception):
    """Base class for every failure raised by the sensitive-data facilities."""


class ConfigurationError(SensitiveDataError):
    """Key material is missing or malformed at the point of use."""


class InvalidKeyError(ConfigurationError):
    """A configured key could not be decoded into exactly 32 bytes."""


class MissingKeyError(ConfigurationError):
    """The lookup (HMAC) key is not configured.  There is no fallback."""


class DecodeError(SensitiveDataError):
    """The stored value is not valid base64 (or not UTF-8 once decrypted)."""


class MalformedBlobError(SensitiveDataError):
    """The decoded blob is too short to hold a nonce and a tag."""


class AuthenticationError(SensitiveDataError):
    """The GCM tag did not verify: tampered data or the wrong key."""


class InsecureKeyWarning(UserWarning):
    """Emitted whenever the public development encryption key is in use."""
