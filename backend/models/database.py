"""SQLAlchemy models for the Secure Bank users table."""

import enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, deferred


class Base(DeclarativeBase):
    pass


# ─── Enums ────────────────────────────────────────────────────────────────────


class SsnScheme(str, enum.Enum):
    """How a user's SSN is stored.  Written on every SSN write."""

    PLAINTEXT = "plaintext"  # leftover from before encryption; must be migrated
    ENCRYPTED = "encrypted"  # AES-256-GCM blob in users.ssn
    LOOKUP = "lookup"  # HMAC digest + last4, no recoverable value


# ─── Models ───────────────────────────────────────────────────────────────────


class User(Base):
    """A bank customer.  Only the columns the SSN tooling touches are mapped."""

    __tablename__ = "users"
    __table_args__ = (
        Index("ix_users_ssn_hash", "ssn_hash"),
        Index("ix_users_ssn_last4", "ssn_last4"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)

    # Legacy column: AES-GCM blob, or plaintext rows that predate encryption.
    # Deferred so lookup queries keep working once the column is dropped;
    # migrations load it explicitly with undefer().
    ssn = deferred(Column(Text, nullable=True))
    ssn_hash = Column(String(64), nullable=True)
    ssn_last4 = Column(String(4), nullable=True)
    # NULL for rows written before the marker existed; classified by content.
    ssn_scheme = Column(
        Enum(
            SsnScheme,
            native_enum=False,
            length=16,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=True,
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} scheme={self.ssn_scheme}>"
