"""
Fact Log Abstraction

This module defines the FactLog interface and two implementations:
- InMemoryFactLog: for development, tests and single-process use
- PostgresFactLog: durable, shared, concurrency-safe (psycopg2)

The FactLog is the single source of truth for:
- Sequence numbers (global total order)
- Previous fact hashes (chain linkage)
- Durability

The ledger and role registry keep business rules and current-state tables;
the history reconstructor only ever reads from here.

TRANSACTION CONTRACT:
All appends go through begin_append():

    with fact_log.begin_append() as ctx:
        fact = build_fact(ctx.head.next_sequence, ctx.head.last_fact_hash, ...)
        ctx.commit(fact)
        # update in-process state here, still inside the append lock

Subscribers are notified after the block exits successfully, so they
never observe a fact whose state update is still in flight.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Generator, Iterable, Optional
from uuid import UUID

from psycopg2.extras import Json

from ..core.hasher import Hasher
from ..observability import get_logger
from ..schemas import TransitionFact

logger = get_logger(__name__)

FactListener = Callable[[TransitionFact], None]


# ============================================================
# EXCEPTIONS
# ============================================================

class FactLogError(Exception):
    """Base exception for fact log errors."""
    pass


class ConcurrencyError(FactLogError):
    """Raised when the head moved underneath an append."""
    pass


class ChainIntegrityError(FactLogError):
    """Raised when a fact does not link to the current head."""
    pass


class LockTimeoutError(FactLogError):
    """Raised when the head lock cannot be acquired in time."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ChainHead:
    """State of the log head; locked for the duration of an append."""
    last_sequence: int  # -1 means empty log
    last_fact_hash: Optional[str]

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    @property
    def is_empty(self) -> bool:
        return self.last_sequence == -1


@dataclass
class AppendContext:
    """
    Transaction context for one append.

    Holds the head snapshot and, for database stores, the connection and
    cursor that acquired the lock, so commit/rollback always happen on the
    same transaction.
    """
    head: ChainHead
    _store: "FactLog"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    fact: Optional[TransitionFact] = field(default=None, init=False)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    @property
    def committed(self) -> bool:
        return self._committed

    def commit(self, fact: TransitionFact) -> TransitionFact:
        if self._committed:
            raise FactLogError("Transaction already committed")
        if self._rolled_back:
            raise FactLogError("Transaction already rolled back")

        result = self._store._do_commit(self, fact)
        self.fact = result
        self._committed = True
        return result

    def rollback(self) -> None:
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


def check_linkage(fact: TransitionFact, head: ChainHead) -> None:
    """
    Validate that a fact is exactly the next link after head.

    Raises ChainIntegrityError on any mismatch.
    """
    if fact.sequence_number != head.next_sequence:
        raise ChainIntegrityError(
            f"Sequence mismatch: expected {head.next_sequence}, "
            f"got {fact.sequence_number}"
        )
    if head.is_empty:
        if fact.previous_fact_hash is not None:
            raise ChainIntegrityError("Genesis fact must have previous_fact_hash=None")
    elif fact.previous_fact_hash != head.last_fact_hash:
        raise ChainIntegrityError(
            f"Previous hash mismatch: expected {head.last_fact_hash}, "
            f"got {fact.previous_fact_hash}"
        )
    if not Hasher.verify_fact(fact.hashable_body(), fact.fact_hash, fact.previous_fact_hash):
        raise ChainIntegrityError(
            f"Hash verification failed for fact at sequence {fact.sequence_number}"
        )


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class FactLog(ABC):
    """
    Append-only, totally ordered log of transition facts.

    Implementations must guarantee:
    1. Atomic append: head lock, validation and write in one transaction
    2. No gaps and no duplicates in sequence numbers
    3. Correct chain linkage for every appended fact
    """

    def __init__(self) -> None:
        self._listeners: list[FactListener] = []
        self._listeners_lock = Lock()

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """
        Begin an atomic append.

        Yields an AppendContext holding the locked head. Anything not
        committed when the block exits is rolled back.
        """
        with self._open_append() as ctx:
            yield ctx
        if ctx.committed and ctx.fact is not None:
            self._notify(ctx.fact)

    @abstractmethod
    def _open_append(self):
        """Acquire the head lock and return a context manager yielding AppendContext."""

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, fact: TransitionFact) -> TransitionFact:
        """Internal: commit within ctx. Use ctx.commit() instead."""

    @abstractmethod
    def _do_rollback(self, ctx: AppendContext) -> None:
        """Internal: release ctx without committing."""

    @abstractmethod
    def list_all(self) -> list[TransitionFact]:
        """All facts in (sequence_number, log_index) order."""

    @abstractmethod
    def list_for_product(self, product_id: int) -> list[TransitionFact]:
        """Facts for one product in (sequence_number, log_index) order."""

    @abstractmethod
    def list_since(self, sequence_number: int) -> list[TransitionFact]:
        """Facts after sequence_number, in order. -1 lists everything."""

    @abstractmethod
    def get_head(self) -> ChainHead:
        """Current head, without locking."""

    @abstractmethod
    def get_fact_count(self) -> int:
        pass

    # ================================================================
    # SUBSCRIPTIONS
    # ================================================================

    def subscribe(self, listener: FactListener) -> Callable[[], None]:
        """
        Register a callback invoked once per committed fact.

        Returns a function that removes the subscription.
        """
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, fact: TransitionFact) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(fact)
            except Exception:
                # The fact is committed; a failing subscriber cannot undo it.
                logger.exception(
                    "Fact listener failed",
                    sequence_number=fact.sequence_number,
                    fact_type=fact.fact_type.value,
                )

    # ================================================================
    # BULK IMPORT
    # ================================================================

    def import_facts(self, facts: Iterable[TransitionFact]) -> int:
        """
        Append previously exported facts, validating every link.

        Facts must continue the current head exactly. Returns the number
        of facts imported.
        """
        count = 0
        for fact in sorted(facts, key=lambda f: f.order_key):
            with self.begin_append() as ctx:
                ctx.commit(fact)
            count += 1
        logger.info("Imported facts", count=count)
        return count


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryFactLog(FactLog):
    """
    In-memory FactLog.

    Suitable for development, tests and single-process deployments.
    Not durable and not shared between processes.
    """

    _LOCK_TOKEN = "in_memory_lock"

    def __init__(self) -> None:
        super().__init__()
        self._facts: list[TransitionFact] = []
        self._by_product: dict[int, list[TransitionFact]] = {}
        self._head = ChainHead(last_sequence=-1, last_fact_hash=None)
        self._lock = Lock()

    @contextmanager
    def _open_append(self) -> Generator[AppendContext, None, None]:
        self._lock.acquire()
        head = ChainHead(
            last_sequence=self._head.last_sequence,
            last_fact_hash=self._head.last_fact_hash,
        )
        ctx = AppendContext(head=head, _store=self, _conn=self._LOCK_TOKEN)
        try:
            yield ctx
        finally:
            if ctx._conn == self._LOCK_TOKEN:
                ctx._conn = None
                self._lock.release()

    def _do_commit(self, ctx: AppendContext, fact: TransitionFact) -> TransitionFact:
        if ctx._conn != self._LOCK_TOKEN:
            raise FactLogError("_do_commit called outside begin_append")

        check_linkage(fact, self._head)
        fact.validate_chain_rules()

        self._facts.append(fact)
        if fact.product_id is not None:
            self._by_product.setdefault(fact.product_id, []).append(fact)
        self._head = ChainHead(
            last_sequence=fact.sequence_number,
            last_fact_hash=fact.fact_hash,
        )
        return fact

    def _do_rollback(self, ctx: AppendContext) -> None:
        # Nothing was written; the lock is released when the context exits.
        pass

    def list_all(self) -> list[TransitionFact]:
        return sorted(self._facts, key=lambda f: f.order_key)

    def list_for_product(self, product_id: int) -> list[TransitionFact]:
        return sorted(self._by_product.get(product_id, ()), key=lambda f: f.order_key)

    def list_since(self, sequence_number: int) -> list[TransitionFact]:
        return [f for f in self.list_all() if f.sequence_number > sequence_number]

    def get_head(self) -> ChainHead:
        return ChainHead(
            last_sequence=self._head.last_sequence,
            last_fact_hash=self._head.last_fact_hash,
        )

    def get_fact_count(self) -> int:
        return len(self._facts)


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS provenance_facts (
    sequence_number     BIGINT PRIMARY KEY,
    log_index           INTEGER NOT NULL DEFAULT 0,
    fact_id             UUID NOT NULL UNIQUE,
    fact_type           TEXT NOT NULL,
    entity_type         TEXT NOT NULL,
    product_id          BIGINT,
    actor               TEXT NOT NULL,
    recorded_at         TIMESTAMPTZ NOT NULL,
    payload_json        JSONB NOT NULL,
    payload_canon       TEXT NOT NULL,
    canon_version       INTEGER NOT NULL,
    previous_fact_hash  CHAR(64),
    fact_hash           CHAR(64) NOT NULL UNIQUE
);

CREATE INDEX IF NOT EXISTS idx_provenance_facts_product
    ON provenance_facts (product_id, sequence_number, log_index);

CREATE TABLE IF NOT EXISTS provenance_head (
    id              BOOLEAN PRIMARY KEY DEFAULT TRUE CHECK (id),
    last_sequence   BIGINT NOT NULL,
    last_fact_hash  CHAR(64)
);

CREATE OR REPLACE FUNCTION provenance_facts_append_only() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'provenance_facts is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS provenance_facts_no_mutation ON provenance_facts;
CREATE TRIGGER provenance_facts_no_mutation
    BEFORE UPDATE OR DELETE ON provenance_facts
    FOR EACH ROW EXECUTE FUNCTION provenance_facts_append_only();
"""

_FACT_COLUMNS = """
    fact_id, sequence_number, log_index, fact_type, entity_type, product_id,
    actor, recorded_at, payload_json, previous_fact_hash, fact_hash
"""


class PostgresFactLog(FactLog):
    """
    PostgreSQL FactLog (psycopg2).

    Provides:
    - ACID appends serialized by a FOR UPDATE lock on the head row
    - Durability and sharing between processes (each ledger refreshes
      before writing after another process appends)
    - Lock/statement timeouts so no append blocks indefinitely

    All transaction state lives in the AppendContext, so one instance can
    be shared across threads.
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    PGCODE_LOCK_NOT_AVAILABLE = "55P03"
    PGCODE_QUERY_CANCELED = "57014"

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable returning a new psycopg2 connection.
            lock_timeout_ms: How long to wait for the head row lock.
            statement_timeout_ms: Max statement execution time.
        """
        super().__init__()
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def ensure_schema(self) -> None:
        """Create tables, index and append-only trigger if missing."""
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA_SQL)
            conn.commit()
            logger.info("Fact log schema ensured")
        finally:
            conn.close()

    @contextmanager
    def _open_append(self) -> Generator[AppendContext, None, None]:
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            cursor.execute(f"SET LOCAL lock_timeout = '{int(self._lock_timeout_ms)}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{int(self._statement_timeout_ms)}ms'")
            cursor.execute("SET LOCAL idle_in_transaction_session_timeout = '30s'")

            row = self._lock_head(cursor)
            if row is None:
                cursor.execute("""
                    INSERT INTO provenance_head (id, last_sequence, last_fact_hash)
                    VALUES (TRUE, -1, NULL)
                    ON CONFLICT (id) DO NOTHING
                """)
                row = self._lock_head(cursor)

            head = ChainHead(last_sequence=row[0], last_fact_hash=row[1])
            ctx = AppendContext(head=head, _store=self, _conn=conn, _cursor=cursor)
            yield ctx
        finally:
            if ctx is None or not ctx.committed:
                try:
                    conn.rollback()
                except Exception:
                    logger.warning("Rollback failed; connection may be broken")
            try:
                cursor.close()
            finally:
                conn.close()

    def _lock_head(self, cursor) -> Optional[tuple]:
        try:
            cursor.execute("""
                SELECT last_sequence, last_fact_hash
                FROM provenance_head
                WHERE id = TRUE
                FOR UPDATE
            """)
        except Exception as e:
            kind = self._timeout_kind(e)
            if kind == "lock":
                raise LockTimeoutError(
                    "Fact log busy - could not acquire head lock. Try again."
                ) from e
            if kind == "statement":
                raise FactLogError("Query timed out - statement took too long.") from e
            raise
        return cursor.fetchone()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL error as "lock", "statement", "timeout" or None.

        PostgreSQL reports both lock_timeout and statement_timeout as 57014
        (query_canceled); the message tells them apart. 55P03 means a
        NOWAIT lock was refused and is treated as "lock".
        """
        pgcode = getattr(e, "pgcode", None)
        err_msg = (getattr(e, "pgerror", None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"
        if pgcode == self.PGCODE_QUERY_CANCELED:
            if "lock timeout" in err_msg or "lock_timeout" in err_msg:
                return "lock"
            if "statement timeout" in err_msg or "statement_timeout" in err_msg:
                return "statement"
            return "timeout"
        if "lock" in err_msg and "timeout" in err_msg:
            return "lock"
        if "statement" in err_msg and "timeout" in err_msg:
            return "statement"
        return None

    def _do_commit(self, ctx: AppendContext, fact: TransitionFact) -> TransitionFact:
        if ctx._cursor is None or ctx._conn is None:
            raise FactLogError("_do_commit called outside begin_append")

        cursor = ctx._cursor

        # Re-read the head inside the same transaction.
        cursor.execute("""
            SELECT last_sequence, last_fact_hash
            FROM provenance_head
            WHERE id = TRUE
        """)
        row = cursor.fetchone()
        current = ChainHead(last_sequence=row[0], last_fact_hash=row[1])
        if current.last_sequence != ctx.head.last_sequence:
            raise ConcurrencyError(
                f"Head moved from {ctx.head.last_sequence} to {current.last_sequence} "
                "during append"
            )
        check_linkage(fact, current)
        fact.validate_chain_rules()

        cursor.execute("""
            INSERT INTO provenance_facts (
                fact_id, sequence_number, log_index, fact_type, entity_type,
                product_id, actor, recorded_at, payload_json, payload_canon,
                canon_version, previous_fact_hash, fact_hash
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            str(fact.fact_id),
            fact.sequence_number,
            fact.log_index,
            fact.fact_type.value,
            fact.entity_type.value,
            fact.product_id,
            fact.actor,
            fact.recorded_at,
            Json(fact.payload),
            Hasher.canonicalize(fact.payload),
            Hasher.SERIALIZATION_VERSION,
            fact.previous_fact_hash,
            fact.fact_hash,
        ))
        cursor.execute("""
            UPDATE provenance_head
            SET last_sequence = %s, last_fact_hash = %s
            WHERE id = TRUE
        """, (fact.sequence_number, fact.fact_hash))

        ctx._conn.commit()
        return fact

    def _do_rollback(self, ctx: AppendContext) -> None:
        if ctx._conn is not None:
            ctx._conn.rollback()

    def _query_facts(self, where: str = "", params: tuple = ()) -> list[TransitionFact]:
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute(
                    f"SELECT {_FACT_COLUMNS} FROM provenance_facts {where} "
                    "ORDER BY sequence_number, log_index",
                    params,
                )
                return [self._row_to_fact(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def list_all(self) -> list[TransitionFact]:
        return self._query_facts()

    def list_for_product(self, product_id: int) -> list[TransitionFact]:
        return self._query_facts("WHERE product_id = %s", (product_id,))

    def list_since(self, sequence_number: int) -> list[TransitionFact]:
        return self._query_facts("WHERE sequence_number > %s", (sequence_number,))

    def get_head(self) -> ChainHead:
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute("""
                    SELECT last_sequence, last_fact_hash
                    FROM provenance_head
                    WHERE id = TRUE
                """)
                row = cursor.fetchone()
        finally:
            conn.close()
        if row is None:
            return ChainHead(last_sequence=-1, last_fact_hash=None)
        return ChainHead(last_sequence=row[0], last_fact_hash=row[1])

    def get_fact_count(self) -> int:
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT COUNT(*) FROM provenance_facts")
                return cursor.fetchone()[0]
        finally:
            conn.close()

    @staticmethod
    def _row_to_fact(row: tuple) -> TransitionFact:
        """Convert a provenance_facts row (in _FACT_COLUMNS order) to a fact."""
        payload = row[8]
        if isinstance(payload, str):
            payload = json.loads(payload)

        return TransitionFact(
            fact_id=row[0] if isinstance(row[0], UUID) else UUID(str(row[0])),
            sequence_number=row[1],
            log_index=row[2],
            fact_type=row[3],
            entity_type=row[4],
            product_id=row[5],
            actor=row[6],
            recorded_at=row[7],
            payload=payload,
            previous_fact_hash=row[9].strip() if row[9] else None,
            fact_hash=row[10].strip(),
        )
