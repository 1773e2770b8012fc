"""Deterministic SSN lookup without decryption.

``ssn_lookup_hash`` computes HMAC-SHA256 of an SSN under SSN_HMAC_KEY.  The
same SSN under the same key always yields the same 64-character hex digest,
so records can be matched (and duplicates detected) by digest alone.
``ssn_last4`` gives the only part of the SSN that is safe to display.

Known limitation: SSNs live in a space of only 10^9 values.  Anyone holding
the HMAC key can hash every candidate and compare against stored digests.
Storage alone never reveals an SSN, but the key must be protected like a
decryption key.
"""

from __future__ import annotations

import hashlib
import hmac
import re

from sensitive.keys import LookupKeyProvider, default_lookup_keys

_NON_DIGITS = re.compile(r"\D")
SSN_DIGITS = 9


def ssn_lookup_hash(ssn: str, keys: LookupKeyProvider | None = None) -> str:
    """Return the hex HMAC-SHA256 digest of ``ssn``.

    Raises MissingKeyError (before hashing anything) when no lookup key is
    configured.
    """
    keys = keys or default_lookup_keys()
    return hmac.new(keys.key, ssn.encode("utf-8"), hashlib.sha256).hexdigest()


def ssn_last4(ssn: str) -> str:
    """Return the last four digits of ``ssn``, ignoring any formatting.

    Values with fewer than four digits return whatever digits exist; callers
    that need a full SSN validate with ``normalize_ssn`` first.
    """
    return _NON_DIGITS.sub("", ssn)[-4:]


def normalize_ssn(ssn: str) -> str:
    """Strip formatting and require exactly nine digits.

    Examples:
        "123-45-6789" -> "123456789"
        "123 45 6789" -> "123456789"
    """
    digits = _NON_DIGITS.sub("", ssn)
    if len(digits) != SSN_DIGITS:
        raise ValueError(
            f"Invalid SSN: must contain exactly {SSN_DIGITS} digits, got {len(digits)}"
        )
    return digits


def mask_ssn(last4: str | None) -> str:
    """Format a display value such as ``***-**-6789``."""
    if not last4:
        return "***-**-****"
    return f"***-**-{last4.rjust(4, '*')}"
