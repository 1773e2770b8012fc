from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import Column, String, inspect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from models.database import Base


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine.  Pool sizing only applies to server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=10,          # persistent connections in the pool
        max_overflow=20,       # additional connections under burst load
        pool_timeout=30,       # seconds to wait for a connection before erroring
        pool_recycle=1800,     # recycle connections after 30 min to avoid stale handles
    )


def session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


async def init_models(bind: AsyncEngine) -> None:
    """Create any missing tables."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# Columns added by the move from the encrypted SSN column to lookup digests.
LOOKUP_COLUMNS = {
    "ssn_hash": String(64),
    "ssn_last4": String(4),
    "ssn_scheme": String(16),
}

LOOKUP_INDEXES = {
    "ix_users_ssn_hash": "ssn_hash",
    "ix_users_ssn_last4": "ssn_last4",
}


def _operations(sync_conn) -> Operations:
    """Alembic operations bound to an open connection, outside any revision script."""
    return Operations(MigrationContext.configure(sync_conn))


def _add_lookup_columns(sync_conn) -> list[str]:
    inspector = inspect(sync_conn)
    existing = {col["name"] for col in inspector.get_columns("users")}
    indexes = {ix["name"] for ix in inspector.get_indexes("users")}
    missing = [name for name in LOOKUP_COLUMNS if name not in existing]

    op = _operations(sync_conn)
    for name in missing:
        op.add_column("users", Column(name, LOOKUP_COLUMNS[name], nullable=True))
    for index_name, column in LOOKUP_INDEXES.items():
        if index_name not in indexes:
            op.create_index(index_name, "users", [column])
    return missing


async def ensure_lookup_columns(bind: AsyncEngine) -> list[str]:
    """Add the lookup-scheme columns to a legacy users table.

    Returns the names of the columns that were added.
    """
    async with bind.begin() as conn:
        return await conn.run_sync(_add_lookup_columns)


async def get_user_columns(bind: AsyncEngine) -> list[dict]:
    """Return column metadata for the users table."""
    async with bind.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_columns("users"))


async def has_legacy_ssn_column(bind: AsyncEngine) -> bool:
    return "ssn" in {col["name"] for col in await get_user_columns(bind)}


def _drop_ssn_column(sync_conn) -> bool:
    if "ssn" not in {col["name"] for col in inspect(sync_conn).get_columns("users")}:
        return False
    # SQLite cannot always drop a column in place; batch mode rebuilds the table.
    with _operations(sync_conn).batch_alter_table("users") as batch_op:
        batch_op.drop_column("ssn")
    return True


async def drop_legacy_ssn_column(bind: AsyncEngine) -> bool:
    """Drop users.ssn.  Returns False when the column is already gone."""
    async with bind.begin() as conn:
        return await conn.run_sync(_drop_ssn_column)
