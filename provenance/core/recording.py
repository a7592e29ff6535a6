"""
Fact recording helpers shared by the registry and the ledger.

Every successful mutation goes through append_fact():
1. Lock the log head (begin_append)
2. Build and hash the fact against that head
3. Commit it
4. Apply the in-process state change, still under the head lock

If anything before step 3 fails, nothing is written and no state changes.

State is only trusted while it matches the log head. Another writer on
the same log moves the head past AppliedCursor, and every append is then
refused with ConcurrencyError until the ledger refreshes.
"""

import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Generator, Optional
from uuid import uuid4

from pydantic import BaseModel

from ..observability import get_logger, get_metrics, operation_context
from ..schemas import EntityType, FactType, TransitionFact
from .errors import LedgerError
from .hasher import Hasher

if TYPE_CHECKING:
    from ..db.store import ChainHead, FactLog

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AppliedCursor:
    """
    Position of the last fact folded into a registry's and ledger's state.

    generation changes only when facts written elsewhere are folded in.
    A mutation notes it before reading state; if it moved by append time,
    the state it checked may be stale.
    """

    def __init__(self) -> None:
        self.sequence = -1
        self.fact_hash: Optional[str] = None
        self.generation = 0

    def check(self, head: "ChainHead", generation: Optional[int] = None) -> None:
        """Raise ConcurrencyError unless state is current with head."""
        # Import here to avoid circular imports
        from ..db.store import ConcurrencyError

        if head.last_sequence != self.sequence or head.last_fact_hash != self.fact_hash:
            raise ConcurrencyError(
                f"Fact log head is at sequence {head.last_sequence} but state "
                f"reflects sequence {self.sequence}; refresh before writing"
            )
        if generation is not None and generation != self.generation:
            raise ConcurrencyError("State was refreshed while the mutation was validated")

    def advance(self, fact: TransitionFact) -> None:
        self.sequence = fact.sequence_number
        self.fact_hash = fact.fact_hash


def make_fact(
    head: "ChainHead",
    fact_type: FactType,
    entity_type: EntityType,
    actor: str,
    recorded_at: datetime,
    payload: BaseModel,
    product_id: Optional[int] = None,
) -> TransitionFact:
    """
    Build a sealed fact that extends head.

    The payload is stored in JSON mode so the hash survives a round trip
    through any JSON store unchanged.
    """
    payload_data = payload.model_dump(mode="json")
    body = TransitionFact.body_for_hash(
        fact_type=fact_type,
        entity_type=entity_type,
        product_id=product_id,
        actor=actor,
        recorded_at=recorded_at,
        payload=payload_data,
    )
    previous_hash = head.last_fact_hash
    return TransitionFact(
        fact_id=uuid4(),
        sequence_number=head.next_sequence,
        log_index=0,
        fact_type=fact_type,
        entity_type=entity_type,
        product_id=product_id,
        actor=actor,
        recorded_at=recorded_at,
        payload=payload_data,
        previous_fact_hash=previous_hash,
        fact_hash=Hasher.hash_fact(body, previous_hash),
    )


def append_fact(
    fact_log: "FactLog",
    fact_type: FactType,
    entity_type: EntityType,
    actor: str,
    recorded_at: datetime,
    payload: BaseModel,
    product_id: Optional[int] = None,
    apply: Optional[Callable[[TransitionFact], None]] = None,
    cursor: Optional[AppliedCursor] = None,
    generation: Optional[int] = None,
) -> TransitionFact:
    """
    Append one fact and apply its state change atomically.

    apply runs after the commit, inside the append lock, and before any
    subscriber is notified. With a cursor, the append is refused unless
    the locked head is the last fact already applied (and, with a
    generation, no refresh happened since the caller read its state).
    """
    start = time.perf_counter()
    with fact_log.begin_append() as ctx:
        if cursor is not None:
            cursor.check(ctx.head, generation)
        fact = make_fact(
            ctx.head,
            fact_type=fact_type,
            entity_type=entity_type,
            actor=actor,
            recorded_at=recorded_at,
            payload=payload,
            product_id=product_id,
        )
        ctx.commit(fact)
        if apply is not None:
            apply(fact)
        if cursor is not None:
            cursor.advance(fact)

    latency_ms = (time.perf_counter() - start) * 1000
    get_metrics().record_append(latency_ms)
    logger.debug(
        "Fact appended",
        sequence_number=fact.sequence_number,
        fact_type=fact.fact_type.value,
        product_id=fact.product_id,
        latency_ms=round(latency_ms, 3),
    )
    return fact


@contextmanager
def guarded_operation(operation: str, caller: Optional[str]) -> Generator[None, None, None]:
    """
    Run a mutation with logging context; log and count ledger rejections.
    """
    with operation_context(operation, caller):
        try:
            yield
        except LedgerError as e:
            get_metrics().record_rejection(e.kind.value)
            logger.warning(
                "Mutation rejected",
                error_kind=e.kind.value,
                error=str(e),
            )
            raise
