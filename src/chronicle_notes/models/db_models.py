"""SQLAlchemy database models for Chronicle Notes."""
import datetime
import logging
from typing import Optional

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Index, Integer,
                        String, Text, create_engine, event, inspect, text)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool

from chronicle_notes.config import config

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DBNote(Base):
    """Database model for a note, including its edit lock columns."""
    __tablename__ = "notes"
    id = Column(String(36), primary_key=True)
    campaign_id = Column(String(36), nullable=False)
    user_id = Column(String(36), nullable=False)
    entity_id = Column(String(36), nullable=True, index=True)
    title = Column(String(200), nullable=False, default="Untitled")
    content = Column(Text, nullable=False, default="[]")
    entry = Column(Text, nullable=True)
    entry_html = Column(Text, nullable=True)
    color = Column(String(20), nullable=False, default="#374151")
    pinned = Column(Boolean, nullable=False, default=False)
    is_shared = Column(Boolean, nullable=False, default=False)
    last_edited_by = Column(String(36), nullable=True)
    locked_by = Column(String(36), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    versions = relationship(
        "DBNoteVersion",
        back_populates="note",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_notes_user_campaign", "user_id", "campaign_id"),
        Index("idx_notes_shared", "campaign_id", "is_shared"),
        Index("idx_notes_locked", "locked_by", "locked_at"),
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBNoteVersion(Base):
    """Database model for an archived note snapshot.

    ``seq`` is a monotonically increasing surrogate key; it breaks ties between
    snapshots written within the same clock tick so newest-first ordering and
    pruning stay deterministic.
    """
    __tablename__ = "note_versions"
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False)
    note_id = Column(
        String(36),
        ForeignKey("notes.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(String(36), nullable=False)
    title = Column(String(200), nullable=False, default="")
    content = Column(Text, nullable=False, default="[]")
    entry = Column(Text, nullable=True)
    entry_html = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    note = relationship("DBNote", back_populates="versions")

    __table_args__ = (
        Index("idx_note_versions_note", "note_id", "created_at"),
    )

    def __repr__(self) -> str:
        """Return string representation of version."""
        return f"<NoteVersion(id='{self.id}', note_id='{self.note_id}')>"


# Columns added when notes became collaborative. Older databases created
# before that point are upgraded in place by _migrate_add_collaboration_columns.
_COLLABORATION_COLUMNS = {
    "entry": "TEXT",
    "entry_html": "TEXT",
    "is_shared": "BOOLEAN NOT NULL DEFAULT 0",
    "last_edited_by": "VARCHAR(36)",
    "locked_by": "VARCHAR(36)",
    "locked_at": "DATETIME",
}


def init_db(url: Optional[str] = None) -> Engine:
    """Initialize the database and return a configured engine.

    For SQLite every connection gets WAL journaling, NORMAL synchronous mode
    and enforced foreign keys (version history cascades with its note). The
    busy timeout makes concurrent writers wait for each other instead of
    failing, which the conditional lock updates rely on.

    Args:
        url: SQLAlchemy URL. Defaults to config.get_db_url().
    """
    db_url = url or config.get_db_url()
    is_sqlite = db_url.startswith("sqlite")

    engine_kwargs = {
        "poolclass": QueuePool,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
    }
    if is_sqlite:
        engine_kwargs["connect_args"] = {"timeout": 30, "check_same_thread": False}

    engine = create_engine(db_url, **engine_kwargs)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    Base.metadata.create_all(engine)
    _migrate_add_collaboration_columns(engine)

    logger.info(f"Database initialized: {engine.url.render_as_string(hide_password=True)}")
    return engine


def _migrate_add_collaboration_columns(engine: Engine) -> None:
    """Migration: add sharing, lock and rich-text columns to old notes tables.

    Checks the live schema first, so it is idempotent and safe to run on
    every start.
    """
    inspector = inspect(engine)
    columns = {col["name"] for col in inspector.get_columns("notes")}
    missing = [name for name in _COLLABORATION_COLUMNS if name not in columns]
    if not missing:
        return

    with engine.connect() as conn:
        for name in missing:
            conn.execute(text(
                f"ALTER TABLE notes ADD COLUMN {name} {_COLLABORATION_COLUMNS[name]}"
            ))
        conn.commit()
    logger.info(f"Added collaboration columns to notes: {', '.join(missing)}")


def get_session_factory(engine: Optional[Engine] = None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
