# app/x402/replay.py
"""
Anti-replay protection for payment proofs.

A transaction hash may authorize at most one protected operation. Two layers:
- ReplayCache: bounded in-memory set, a write-through accelerator only
- ReplayLedger: durable table with a unique index on tx_hash, the only
  enforcement point that is correct under concurrency

The check-then-consume window is closed by the ledger: consume() is an
insert that loses with IntegrityError when another request already claimed
the hash. Storage faults raise ReplayStoreUnavailable so callers fail closed.
"""
import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.core.database import UsedTransaction, create_db_engine, create_session_factory, init_db
from app.x402.errors import ReplayStoreUnavailable

logger = logging.getLogger(__name__)


def normalize_tx_hash(tx_hash: str) -> str:
    return tx_hash.strip().lower()


def make_replay_key(chain_key: str, tx_hash: str) -> str:
    """Composite ledger key, e.g. "base:0xabc..."."""
    return f"{chain_key}:{normalize_tx_hash(tx_hash)}"


class ReplayCache:
    """
    Bounded set of consumed transaction hashes.

    Evicts the oldest entry once max_size is reached. Thread-safe.
    """

    def __init__(self, max_size: int = 10000):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._entries: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add(self, key: str) -> None:
        with self._lock:
            if key in self._entries:
                return
            if len(self._entries) >= self._max_size:
                self._entries.popitem(last=False)
            self._entries[key] = None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class ReplayLedger:
    """Durable record of consumed transactions, backed by SQLAlchemy."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "ReplayLedger":
        """
        Create a ledger for a database URL, creating tables if needed.

        Raises:
            ReplayStoreUnavailable: If the database cannot be opened
        """
        try:
            engine = create_db_engine(database_url)
            init_db(engine)
        except SQLAlchemyError as e:
            raise ReplayStoreUnavailable(f"Replay ledger unavailable: {e}") from e
        return cls(create_session_factory(engine))

    def is_recorded(self, tx_hash: str) -> bool:
        """
        Check whether a transaction hash has been consumed.

        Raises:
            ReplayStoreUnavailable: If the store cannot be queried
        """
        try:
            with self._session_factory() as session:
                found = session.execute(
                    select(UsedTransaction.id)
                    .where(UsedTransaction.tx_hash == tx_hash)
                    .limit(1)
                ).first()
                return found is not None
        except SQLAlchemyError as e:
            raise ReplayStoreUnavailable(f"Replay ledger lookup failed: {e}") from e

    def insert_if_absent(self, tx_hash: str, replay_key: str, action: str) -> bool:
        """
        Atomically claim a transaction hash.

        Returns:
            True if this call recorded the hash, False if it already existed

        Raises:
            ReplayStoreUnavailable: On any storage fault other than a duplicate
        """
        record = UsedTransaction(
            tx_hash=tx_hash,
            replay_key=replay_key,
            action=action,
            consumed_at=datetime.now(timezone.utc),
        )
        try:
            with self._session_factory() as session:
                session.add(record)
                session.commit()
            return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise ReplayStoreUnavailable(f"Replay ledger write failed: {e}") from e


class ReplayGuard:
    """Cache-first, ledger-authoritative replay protection."""

    def __init__(self, ledger: ReplayLedger, cache: Optional[ReplayCache] = None):
        self.ledger = ledger
        self.cache = cache if cache is not None else ReplayCache(settings.REPLAY_CACHE_SIZE)

    def is_consumed(self, tx_hash: str) -> bool:
        """
        Check whether a transaction hash was already used.

        A durable hit warms the cache for the rest of the process lifetime.

        Raises:
            ReplayStoreUnavailable: If the ledger cannot be consulted
        """
        key = normalize_tx_hash(tx_hash)
        if key in self.cache:
            return True

        if self.ledger.is_recorded(key):
            self.cache.add(key)
            return True

        return False

    def consume(self, tx_hash: str, chain_key: str, action: str) -> bool:
        """
        Record a transaction hash as used.

        Returns:
            True if this request claimed the hash, False if another request won

        Raises:
            ReplayStoreUnavailable: If the ledger write fails
        """
        key = normalize_tx_hash(tx_hash)
        claimed = self.ledger.insert_if_absent(key, make_replay_key(chain_key, key), action)
        # Either way the hash is now consumed
        self.cache.add(key)
        if not claimed:
            logger.warning(f"Anti-replay: race detected for tx {key[:18]}...")
        return claimed


# Global replay guard instance
_replay_guard: Optional[ReplayGuard] = None
_replay_guard_lock = threading.Lock()


def get_replay_guard() -> ReplayGuard:
    """
    Get the global replay guard, opening the ledger at settings.DATABASE_URL.

    Returns:
        The singleton ReplayGuard instance

    Raises:
        ReplayStoreUnavailable: If the ledger cannot be opened; the next call retries
    """
    global _replay_guard

    if _replay_guard is None:
        with _replay_guard_lock:
            if _replay_guard is None:
                ledger = ReplayLedger.from_url(settings.DATABASE_URL)
                _replay_guard = ReplayGuard(ledger, ReplayCache(settings.REPLAY_CACHE_SIZE))
                logger.info("Replay guard initialized")

    return _replay_guard


def reset_replay_guard() -> None:
    """Drop the global replay guard (useful for testing)."""
    global _replay_guard
    with _replay_guard_lock:
        _replay_guard = None
