# app/core/database.py
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


class Base(DeclarativeBase):
    pass


class UsedTransaction(Base):
    """
    One row per consumed payment proof. Append-only.

    The unique index on tx_hash is what guarantees a transaction authorizes
    at most one protected operation, across processes and instances.
    """

    __tablename__ = "used_transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, unique=True, index=True)
    replay_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    action: Mapped[str] = mapped_column(String(200), nullable=False)
    consumed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )


def create_db_engine(database_url: str) -> Engine:
    """Create an engine; SQLite connections are shared with the threadpool."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
