"""SSN storage and lookup for application callers.

New SSNs are stored only as an HMAC lookup digest plus the last four
digits.  Nothing here can recover an SSN; matching is done by digest.
Errors from the key providers propagate: a misconfigured key is an
unrecoverable request failure, not something to retry.
"""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import SsnScheme, User
from sensitive.keys import LookupKeyProvider
from sensitive.lookup import normalize_ssn, ssn_last4, ssn_lookup_hash


def protect_ssn(user: User, ssn: str, keys: LookupKeyProvider | None = None) -> None:
    """Store ``ssn`` on ``user`` under the lookup scheme.

    Raises ValueError if ``ssn`` is not nine digits once formatting is
    stripped, and MissingKeyError if no lookup key is configured.
    """
    digits = normalize_ssn(ssn)
    user.ssn_hash = ssn_lookup_hash(digits, keys)
    user.ssn_last4 = ssn_last4(digits)
    user.ssn_scheme = SsnScheme.LOOKUP
    user.ssn = None


async def find_users_by_ssn(
    db: AsyncSession, ssn: str, keys: LookupKeyProvider | None = None
) -> list[User]:
    """Return users whose stored digest matches ``ssn``."""
    digest = ssn_lookup_hash(normalize_ssn(ssn), keys)
    result = await db.execute(select(User).where(User.ssn_hash == digest).order_by(User.id))
    return list(result.scalars().all())


async def find_users_by_last4(db: AsyncSession, last4: str) -> list[User]:
    result = await db.execute(
        select(User).where(User.ssn_last4 == ssn_last4(last4)).order_by(User.id)
    )
    return list(result.scalars().all())


async def ssn_in_use(
    db: AsyncSession, ssn: str, keys: LookupKeyProvider | None = None
) -> bool:
    """Duplicate detection without decrypting anything."""
    digest = ssn_lookup_hash(normalize_ssn(ssn), keys)
    count = await db.scalar(select(func.count(User.id)).where(User.ssn_hash == digest))
    return bool(count)
