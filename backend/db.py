import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import JSON, Column, ForeignKey, Integer, MetaData, String, Table, Text, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

import config

logger = logging.getLogger(__name__)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

JSONType = JSON().with_variant(JSONB(), "postgresql")

metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", String, primary_key=True),
    Column("email", String, unique=True, index=True, nullable=False),
    Column("password", String, nullable=False),
    Column("name", String, nullable=False),
    Column("plan", String, nullable=False, default="free"),
    Column("created_at", String, nullable=False),
)

projects_table = Table(
    "projects",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False),
    Column("name", String, nullable=False),
    Column("created_at", String, nullable=False),
)

messages_table = Table(
    "messages",
    metadata,
    Column("id", String, primary_key=True),
    Column("project_id", String, ForeignKey("projects.id", ondelete="CASCADE"), index=True, nullable=False),
    Column("role", String, nullable=False),
    Column("type", String, nullable=False),
    Column("content", Text, nullable=False),
    Column("images", JSONType, nullable=False),
    # Set on assistant messages only: the user message that opened the turn.
    Column("turn_id", String, unique=True, nullable=True),
    Column("created_at", String, index=True, nullable=False),
)

fragments_table = Table(
    "fragments",
    metadata,
    Column("id", String, primary_key=True),
    Column("message_id", String, ForeignKey("messages.id", ondelete="CASCADE"), unique=True, nullable=False),
    Column("sandbox_url", String, nullable=False),
    Column("title", String, nullable=False),
    Column("files", JSONType, nullable=False),
    Column("created_at", String, nullable=False),
)

# Rate-limiter style credit store: one row per user, consumed points and period expiry.
usage_table = Table(
    "usage",
    metadata,
    Column("key", String, primary_key=True),
    Column("points", Integer, nullable=False),
    Column("expire", String, nullable=False),
)


# --- Time helpers ---

def utcnow_iso() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def iso_in(seconds: float, start: Optional[str] = None) -> str:
    base = parse_iso(start) if start else datetime.now(timezone.utc)
    return (base + timedelta(seconds=seconds)).strftime(ISO_FORMAT)


def parse_iso(value: str) -> datetime:
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def next_timestamp(latest: Optional[str]) -> str:
    """Current time, bumped past ``latest`` so ordering stays strictly increasing."""
    now = utcnow_iso()
    if latest and now <= latest:
        return iso_in(0.000001, start=latest)
    return now


# --- Engine ---
_engine: Optional[AsyncEngine] = None
_engine_lock = threading.Lock()


def _configure_sqlite(engine: AsyncEngine) -> None:
    # The driver's implicit BEGIN is deferred; take the write lock up front instead
    # so conditional updates and timestamp bumps serialize across connections.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        engine = create_async_engine(url, connect_args={"timeout": 30})
        _configure_sqlite(engine)
    else:
        engine = create_async_engine(url, pool_pre_ping=True)
    return engine


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                if not config.DATABASE_URL:
                    raise RuntimeError("DATABASE_URL is not set")
                _engine = create_engine_for(config.DATABASE_URL)
                logger.info("Database engine created for %s", _engine.url.render_as_string(hide_password=True))
    return _engine


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
