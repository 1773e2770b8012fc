"""Batch migrations for stored SSNs.

Two paths exist, matching the history of the users table:

* ``encrypt_plaintext_ssns`` encrypts SSNs that were stored in the clear
  before column encryption existed.
* ``migrate_to_lookup`` moves every legacy value (encrypted or plaintext) to
  the lookup scheme: HMAC digest plus last four digits.

Each row is independent.  A row that cannot be read is logged by id and
skipped; it never aborts the batch, and the returned ``MigrationReport``
lists every skipped id with the reason.  Configuration errors are raised
before any row is touched.  SSN values are never logged.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from sqlalchemy import or_, select
from sqlalchemy.orm import undefer
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from models.database import SsnScheme, User
from sensitive.encryption import decrypt_sensitive_data, encrypt_sensitive_data
from sensitive.errors import (
    AuthenticationError,
    DecodeError,
    MalformedBlobError,
    SensitiveDataError,
)
from sensitive.keys import (
    EncryptionKeyProvider,
    LookupKeyProvider,
    default_encryption_keys,
    default_lookup_keys,
)
from sensitive.lookup import normalize_ssn, ssn_last4, ssn_lookup_hash

logger = logging.getLogger(__name__)

_RAW_SSN = re.compile(r"^\d{9}$")

# Rows whose only copy of the SSN is the legacy column.
_LEGACY_ONLY = (
    User.ssn.is_not(None),
    User.ssn != "",
    or_(User.ssn_hash.is_(None), User.ssn_hash == ""),
)


@dataclass
class MigrationReport:
    """Outcome of one migration run, by user id."""

    migrated: list[int] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)
    skipped: dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.skipped

    def skip(self, user_id: int, reason: str) -> None:
        self.skipped[user_id] = reason
        logger.warning("Skipping user id=%s: %s", user_id, reason)

    def summary(self) -> str:
        return (
            f"migrated={len(self.migrated)} unchanged={len(self.unchanged)} "
            f"skipped={len(self.skipped)}"
        )


def classify_stored_ssn(
    user: User, keys: EncryptionKeyProvider | None = None
) -> SsnScheme | None:
    """Work out how ``user``'s SSN is stored.

    The ``ssn_scheme`` marker wins when present.  Rows written before the
    marker existed are classified by content: any row with a digest is
    lookup (the legacy value may linger until purged), a value that
    decrypts is encrypted, a value that does not decrypt but is nine raw
    digits is plaintext.  Anything else returns None and must be reported,
    not guessed.
    """
    if user.ssn_scheme is not None:
        return SsnScheme(user.ssn_scheme)

    if user.ssn_hash:
        return SsnScheme.LOOKUP
    if not user.ssn:
        return None

    try:
        decrypt_sensitive_data(user.ssn, keys)
        return SsnScheme.ENCRYPTED
    except (DecodeError, MalformedBlobError, AuthenticationError):
        if _RAW_SSN.match(user.ssn):
            return SsnScheme.PLAINTEXT
        return None


async def _iter_batches(
    db: AsyncSession, criteria, batch_size: int
) -> AsyncIterator[list[User]]:
    """Yield candidate users in id order, ``batch_size`` at a time."""
    last_id = 0
    while True:
        result = await db.execute(
            select(User)
            .options(undefer(User.ssn))
            .where(*criteria, User.id > last_id)
            .order_by(User.id)
            .limit(batch_size)
        )
        users = list(result.scalars().all())
        if not users:
            return
        last_id = users[-1].id
        yield users


async def encrypt_plaintext_ssns(
    db: AsyncSession,
    keys: EncryptionKeyProvider | None = None,
    *,
    batch_size: int | None = None,
) -> MigrationReport:
    """Encrypt legacy plaintext SSNs in place and mark them encrypted."""
    keys = keys or default_encryption_keys()
    batch_size = batch_size or get_settings().migration_batch_size
    report = MigrationReport()
    criteria = (
        User.ssn.is_not(None),
        User.ssn != "",
        or_(User.ssn_scheme.is_(None), User.ssn_scheme == SsnScheme.PLAINTEXT),
    )

    logger.info("Starting SSN encryption migration...")
    async for users in _iter_batches(db, criteria, batch_size):
        for user in users:
            scheme = classify_stored_ssn(user, keys)
            if scheme is SsnScheme.LOOKUP:
                # Digest already present; a raw leftover is still sealed.
                user.ssn_scheme = SsnScheme.LOOKUP
                if _RAW_SSN.match(user.ssn):
                    user.ssn = encrypt_sensitive_data(user.ssn, keys)
                    report.migrated.append(user.id)
                else:
                    report.unchanged.append(user.id)
            elif scheme is SsnScheme.ENCRYPTED:
                user.ssn_scheme = SsnScheme.ENCRYPTED
                report.unchanged.append(user.id)
            elif scheme is SsnScheme.PLAINTEXT:
                if not _RAW_SSN.match(user.ssn):
                    report.skip(user.id, "marked plaintext but not a 9-digit SSN")
                    continue
                user.ssn = encrypt_sensitive_data(user.ssn, keys)
                user.ssn_scheme = SsnScheme.ENCRYPTED
                report.migrated.append(user.id)
                logger.info("User %s: SSN encrypted", user.id)
            else:
                report.skip(user.id, "value is neither a valid blob nor a raw SSN")
        await db.commit()

    logger.info("SSN encryption migration finished: %s", report.summary())
    return report


def _recover_plaintext(
    user: User, scheme: SsnScheme | None, keys: EncryptionKeyProvider
) -> str:
    if scheme is SsnScheme.ENCRYPTED:
        return decrypt_sensitive_data(user.ssn, keys)
    if scheme is SsnScheme.PLAINTEXT:
        return user.ssn
    if scheme is SsnScheme.LOOKUP:
        raise ValueError("marked lookup but has no digest")
    raise ValueError("value is neither a valid blob nor a raw SSN")


async def migrate_to_lookup(
    db: AsyncSession,
    encryption_keys: EncryptionKeyProvider | None = None,
    lookup_keys: LookupKeyProvider | None = None,
    *,
    purge_legacy: bool = False,
    batch_size: int | None = None,
) -> MigrationReport:
    """Compute lookup digests for every row that still only has a legacy SSN.

    With ``purge_legacy`` the legacy ``users.ssn`` value is cleared once the
    digest is written; otherwise it is kept for the transition window.
    Raises MissingKeyError before reading any row when SSN_HMAC_KEY is unset.
    """
    lookup_keys = lookup_keys or default_lookup_keys()
    encryption_keys = encryption_keys or default_encryption_keys()
    batch_size = batch_size or get_settings().migration_batch_size
    report = MigrationReport()

    logger.info("Starting SSN lookup migration...")
    async for users in _iter_batches(db, _LEGACY_ONLY, batch_size):
        for user in users:
            try:
                scheme = classify_stored_ssn(user, encryption_keys)
                digits = normalize_ssn(_recover_plaintext(user, scheme, encryption_keys))
            except SensitiveDataError as exc:
                report.skip(user.id, type(exc).__name__)
                continue
            except ValueError as exc:
                report.skip(user.id, str(exc))
                continue

            user.ssn_hash = ssn_lookup_hash(digits, lookup_keys)
            user.ssn_last4 = ssn_last4(digits)
            user.ssn_scheme = SsnScheme.LOOKUP
            if purge_legacy:
                user.ssn = None
            report.migrated.append(user.id)
            logger.info("Migrated user id=%s last4=%s", user.id, user.ssn_last4)
        await db.commit()

    logger.info("SSN lookup migration finished: %s", report.summary())
    return report


async def legacy_only_user_ids(db: AsyncSession) -> list[int]:
    """Ids of users whose SSN has not been moved to the lookup scheme yet."""
    result = await db.execute(select(User.id).where(*_LEGACY_ONLY).order_by(User.id))
    return list(result.scalars().all())
