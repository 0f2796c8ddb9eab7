from __future__ import annotations

import enum
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StorageError, TaskboardError

logger = logging.getLogger(__name__)

READ_ONLY_OPTION = "taskboard_read_only"


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


class Priority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    external_chat_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(140))
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    assigned_items: Mapped[list[ChecklistItem]] = relationship(back_populates="assigned_to")


class Board(Base):
    __tablename__ = "boards"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(140))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    lanes: Mapped[list[Lane]] = relationship(
        back_populates="board", cascade="all, delete-orphan", passive_deletes=True
    )


class Lane(Base):
    __tablename__ = "lanes"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    board_id: Mapped[str] = mapped_column(String(36), ForeignKey("boards.id", ondelete="CASCADE"), index=True)
    title: Mapped[str] = mapped_column(String(140))
    # Dense 0-based rank within the board. No unique constraint: bulk shifts
    # pass through transient duplicates before the transaction commits.
    order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    board: Mapped[Board] = relationship(back_populates="lanes")
    cards: Mapped[list[Card]] = relationship(
        back_populates="lane", cascade="all, delete-orphan", passive_deletes=True
    )


class Card(Base):
    __tablename__ = "cards"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    lane_id: Mapped[str] = mapped_column(String(36), ForeignKey("lanes.id", ondelete="CASCADE"), index=True)
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[Priority] = mapped_column(
        Enum(Priority, name="card_priority", native_enum=False, validate_strings=True),
        default=Priority.MEDIUM,
    )
    order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    lane: Mapped[Lane] = relationship(back_populates="cards")
    checklist_items: Mapped[list[ChecklistItem]] = relationship(
        back_populates="card", cascade="all, delete-orphan", passive_deletes=True
    )


class ChecklistItem(Base):
    __tablename__ = "checklist_items"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    card_id: Mapped[str] = mapped_column(String(36), ForeignKey("cards.id", ondelete="CASCADE"), index=True)
    text: Mapped[str] = mapped_column(Text)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    assigned_to_user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    card: Mapped[Card] = relationship(back_populates="checklist_items")
    assigned_to: Mapped[User | None] = relationship(back_populates="assigned_items")


class Database:
    """Owns the engine and session factory for one process.

    Built once at startup and handed to the store and the web app; nothing in
    the package reaches for a module-level engine.
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.is_sqlite = url.startswith("sqlite")
        kwargs: dict = {"echo": echo}
        if self.is_sqlite:
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        if self.is_sqlite:
            _configure_sqlite(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """One all-or-nothing unit of work.

        Commits on success; on any exception everything is rolled back and
        driver errors are re-raised as ``StorageError``.
        """
        with self._unit_of_work(read_only=False) as session:
            yield session

    @contextmanager
    def read(self) -> Iterator[Session]:
        """A unit of work that only reads; on SQLite it skips the write lock."""
        with self._unit_of_work(read_only=True) as session:
            yield session

    @contextmanager
    def _unit_of_work(self, read_only: bool) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            with session.begin():
                if read_only:
                    session.connection(execution_options={READ_ONLY_OPTION: True})
                yield session
        except TaskboardError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Transaction rolled back: %s", exc, exc_info=True)
            raise StorageError("storage failure", {"reason": exc.__class__.__name__}) from exc
        finally:
            session.close()


def _configure_sqlite(engine) -> None:
    # pysqlite defers BEGIN until the first write; writers take the write lock
    # up front so read-compute-write sequences serialize across connections.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(READ_ONLY_OPTION):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")
