import os
from urllib.parse import urlsplit

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)

# Supabase's transaction-mode pooler (pgbouncer)
SUPABASE_POOLER_PORT = 6543


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        # Supabase hands out postgres:// connection strings
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def asyncpg_connect_args(db_url: str) -> dict:
    """
    pgbouncer in transaction mode cannot keep asyncpg's prepared statements
    alive across transactions, so statement caching is switched off when the
    URL points at the Supabase pooler or DB_PGBOUNCER=1 is set.
    """
    behind_pooler = os.getenv("DB_PGBOUNCER", "0") == "1"
    try:
        behind_pooler = behind_pooler or \
            urlsplit(db_url).port == SUPABASE_POOLER_PORT
    except ValueError:
        pass
    if not behind_pooler:
        return {}
    return {"statement_cache_size": 0, "prepared_statement_cache_size": 0}


def make_async_engine(database_url: str):
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    if db_url.startswith("postgresql+asyncpg://"):
        kw.update(
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "5")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )
        connect_args = asyncpg_connect_args(db_url)
        if connect_args:
            kw["connect_args"] = connect_args

    engine = create_async_engine(db_url, **kw)

    # Apply SQLite PRAGMAs (via the sync_engine behind the async engine)
    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, SessionAsync
