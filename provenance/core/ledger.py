"""
Product Ledger - The Heart of the System

This is an append-only, role-gated ledger of custody and lifecycle
transitions. Products are not "edited". Things happen to them.

The ledger:
- Authorizes each mutation against the caller's roles
- Validates arguments
- Appends exactly one hashed, chained fact per successful mutation
- Only then swaps in the new current-state snapshot

Rules (enforced in code):
- Only producers register products; registration makes them the owner
- Only the current owner transfers custody, and only to an identity
  holding a supply-chain role
- Who may set a status depends on the target status only
- Only regulators attach verifications; verification always moves the
  product to VERIFIED
- While paused, every mutation fails; reads keep working

CONCURRENCY:
- Mutations on one product are serialized by that product's lock
- Registration is serialized by its own lock (gap-free ids)
- Lock order: product/registration lock, then the fact log's head lock
- Reads take no locks; snapshots are frozen and swapped atomically
- Appends are refused with ConcurrencyError once another writer has
  moved the log head; refresh() folds those facts in
"""

from datetime import datetime, timezone
from threading import Lock
from typing import TYPE_CHECKING, Optional, Union

from ..observability import get_logger
from ..schemas import (
    EntityType,
    FactType,
    LedgerPauseChangedPayload,
    OwnershipTransferredPayload,
    Product,
    ProductCreatedPayload,
    ProductStatus,
    ProductVerifiedPayload,
    Role,
    StatusUpdatedPayload,
    TransitionFact,
    VerificationRecord,
    is_null_identity,
)
from .errors import (
    ChainError,
    EmptyFieldError,
    FutureDateError,
    IneligibleRecipientError,
    InvalidIdentityError,
    NotFoundError,
    SelfTransferError,
    UnauthorizedError,
)
from .hasher import Hasher
from .policy import (
    can_administer,
    can_receive_custody,
    can_register,
    can_set_status,
    can_verify,
    permitted_roles_for,
    status_rejection_message,
)
from .recording import AppliedCursor, Clock, append_fact, guarded_operation, utc_now
from .registry import RoleRegistry

if TYPE_CHECKING:
    from ..db.store import FactLog

logger = get_logger(__name__)

ProductionDate = Union[datetime, int]


def _coerce_production_date(value: ProductionDate) -> datetime:
    """
    Normalize a production date to an aware datetime.

    Integers are Unix seconds; naive datetimes are read as UTC.
    """
    if isinstance(value, bool):
        raise TypeError("production_date must be a datetime or Unix seconds")
    if isinstance(value, int):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("production_date must be a datetime or Unix seconds")


class ProductLedger:
    """
    The product ledger.

    Owns the product table and the verification lists. Identity and roles
    are delegated to a RoleRegistry; ordering and durability to the
    registry's FactLog.
    """

    def __init__(
        self,
        registry: Optional[RoleRegistry] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            registry: Role registry (and, through it, the fact log).
                      If None, creates one over a fresh InMemoryFactLog.
            clock: Callable returning the current aware datetime.
        """
        self._clock = clock or utc_now
        self._registry = registry or RoleRegistry(clock=self._clock)
        self._fact_log = self._registry.fact_log
        self._pause = self._registry.pause_switch
        self._cursor: AppliedCursor = self._registry.cursor

        # Current-state projections of the fact log
        self._products: dict[int, Product] = {}
        self._verifications: dict[int, tuple[VerificationRecord, ...]] = {}

        self._product_locks: dict[int, Lock] = {}
        self._register_lock = Lock()
        self._next_id = 1

    @property
    def registry(self) -> RoleRegistry:
        return self._registry

    @property
    def fact_log(self) -> "FactLog":
        return self._fact_log

    def _snapshot(self, product_id: int) -> Product:
        product = self._products.get(product_id)
        if product is None:
            raise NotFoundError(product_id)
        return product

    # ================================================================
    # MUTATIONS
    # ================================================================

    def register(
        self,
        name: str,
        batch_id: str,
        origin: str,
        production_date: ProductionDate,
        caller: str,
    ) -> int:
        """
        Register a new product owned by the calling producer.

        Returns the new product id.
        """
        with guarded_operation("register", caller):
            seen = self._cursor.generation
            self._pause.check()
            if not can_register(self._registry.roles_of(caller)):
                raise UnauthorizedError(
                    "Only producer can register products",
                    permitted_roles={Role.PRODUCER},
                )
            if not name or not name.strip():
                raise EmptyFieldError("name")

            produced = _coerce_production_date(production_date)

            with self._register_lock:
                # Read under the lock so created_at follows id order
                now = self._clock()
                if produced > now:
                    raise FutureDateError("Production date cannot be in the future")

                product_id = self._next_id
                payload = ProductCreatedPayload(
                    product_id=product_id,
                    name=name,
                    batch_id=batch_id or "",
                    origin=origin or "",
                    production_date=produced,
                    producer=caller,
                )
                append_fact(
                    self._fact_log,
                    fact_type=FactType.PRODUCT_CREATED,
                    entity_type=EntityType.PRODUCT,
                    actor=caller,
                    recorded_at=now,
                    payload=payload,
                    product_id=product_id,
                    apply=self._apply,
                    cursor=self._cursor,
                    generation=seen,
                )

        logger.info(
            "Product registered",
            product_id=product_id,
            product_name=name,
            producer=caller,
        )
        return product_id

    def transfer(
        self,
        product_id: int,
        new_owner: str,
        metadata: str = "",
        caller: Optional[str] = None,
    ) -> None:
        """Hand custody of a product to another supply-chain participant."""
        with guarded_operation("transfer", caller):
            seen = self._cursor.generation
            self._pause.check()
            self._snapshot(product_id)

            with self._product_locks[product_id]:
                product = self._snapshot(product_id)
                if caller != product.current_owner:
                    raise UnauthorizedError("Only current owner can perform this action")
                if is_null_identity(new_owner):
                    raise InvalidIdentityError("Invalid address: zero address")
                if new_owner == caller:
                    raise SelfTransferError("Cannot transfer to yourself")
                if not can_receive_custody(self._registry.roles_of(new_owner)):
                    raise IneligibleRecipientError(
                        "New owner must have a valid supply chain role"
                    )

                payload = OwnershipTransferredPayload(
                    product_id=product_id,
                    from_owner=caller,
                    to_owner=new_owner,
                    metadata=metadata or "",
                )
                append_fact(
                    self._fact_log,
                    fact_type=FactType.OWNERSHIP_TRANSFERRED,
                    entity_type=EntityType.PRODUCT,
                    actor=caller,
                    recorded_at=self._clock(),
                    payload=payload,
                    product_id=product_id,
                    apply=self._apply,
                    cursor=self._cursor,
                    generation=seen,
                )

        logger.info(
            "Ownership transferred",
            product_id=product_id,
            from_owner=caller,
            to_owner=new_owner,
        )

    def update_status(
        self,
        product_id: int,
        new_status: Union[ProductStatus, str, int],
        notes: str = "",
        caller: Optional[str] = None,
    ) -> None:
        """
        Move a product to new_status.

        Only the target status is checked against the caller's roles;
        backward, skipped and repeated statuses are accepted.
        """
        status = ProductStatus.coerce(new_status)
        with guarded_operation("update_status", caller):
            seen = self._cursor.generation
            self._pause.check()
            self._snapshot(product_id)
            if not can_set_status(self._registry.roles_of(caller), status):
                raise UnauthorizedError(
                    status_rejection_message(status),
                    permitted_roles=permitted_roles_for(status),
                )

            with self._product_locks[product_id]:
                product = self._snapshot(product_id)
                payload = StatusUpdatedPayload(
                    product_id=product_id,
                    old_status=product.status,
                    new_status=status,
                    notes=notes or "",
                    updated_by=caller,
                )
                append_fact(
                    self._fact_log,
                    fact_type=FactType.STATUS_UPDATED,
                    entity_type=EntityType.PRODUCT,
                    actor=caller,
                    recorded_at=self._clock(),
                    payload=payload,
                    product_id=product_id,
                    apply=self._apply,
                    cursor=self._cursor,
                    generation=seen,
                )

        logger.info(
            "Status updated",
            product_id=product_id,
            old_status=payload.old_status.value,
            new_status=status.value,
        )

    def add_verification(
        self,
        product_id: int,
        certificate_ref: str,
        notes: str = "",
        caller: Optional[str] = None,
    ) -> None:
        """Attach a regulator's certification and mark the product VERIFIED."""
        with guarded_operation("add_verification", caller):
            seen = self._cursor.generation
            self._pause.check()
            self._snapshot(product_id)
            if not can_verify(self._registry.roles_of(caller)):
                raise UnauthorizedError(
                    "Only regulator can add verifications",
                    permitted_roles={Role.REGULATOR},
                )
            if not certificate_ref or not certificate_ref.strip():
                raise EmptyFieldError("certificate_ref")

            with self._product_locks[product_id]:
                product = self._snapshot(product_id)
                payload = ProductVerifiedPayload(
                    product_id=product_id,
                    verifier=caller,
                    certificate_ref=certificate_ref,
                    notes=notes or "",
                    previous_status=product.status,
                )
                append_fact(
                    self._fact_log,
                    fact_type=FactType.PRODUCT_VERIFIED,
                    entity_type=EntityType.PRODUCT,
                    actor=caller,
                    recorded_at=self._clock(),
                    payload=payload,
                    product_id=product_id,
                    apply=self._apply,
                    cursor=self._cursor,
                    generation=seen,
                )

        logger.info(
            "Product verified",
            product_id=product_id,
            verifier=caller,
            certificate_ref=certificate_ref,
        )

    def pause(self, caller: str) -> bool:
        """
        Stop all mutations. Admin only.

        Returns True if the ledger was running and is now paused. Pausing
        an already paused ledger returns False and records nothing; it is
        not rejected with an error.
        """
        return self._set_paused(True, caller)

    def unpause(self, caller: str) -> bool:
        """Resume mutations. Admin only. Returns True if state changed."""
        return self._set_paused(False, caller)

    def _set_paused(self, paused: bool, caller: str) -> bool:
        operation = "pause" if paused else "unpause"
        with guarded_operation(operation, caller):
            seen = self._cursor.generation
            if not can_administer(self._registry.roles_of(caller)):
                raise UnauthorizedError(
                    f"Only admin can {operation} the ledger",
                    permitted_roles={Role.ADMIN},
                )
            with self._pause.lock:
                if self._pause.paused == paused:
                    return False
                append_fact(
                    self._fact_log,
                    fact_type=FactType.LEDGER_PAUSED if paused else FactType.LEDGER_UNPAUSED,
                    entity_type=EntityType.LEDGER,
                    actor=caller,
                    recorded_at=self._clock(),
                    payload=LedgerPauseChangedPayload(paused=paused, changed_by=caller),
                    apply=self._apply,
                    cursor=self._cursor,
                    generation=seen,
                )

        logger.info("Ledger paused" if paused else "Ledger unpaused", changed_by=caller)
        return True

    # ================================================================
    # STATE APPLICATION
    # ================================================================

    def _apply(self, fact: TransitionFact) -> None:
        """
        Apply one committed fact to the current-state tables.

        Runs under the fact log's append lock for live mutations and in
        sequence order during a rebuild. Payloads were validated when the
        fact was built, so this never rejects.
        """
        fact_type = fact.fact_type

        if fact_type == FactType.ROLE_GRANTED:
            self._registry.replay(fact)

        elif fact_type in (FactType.LEDGER_PAUSED, FactType.LEDGER_UNPAUSED):
            payload = LedgerPauseChangedPayload.model_validate(fact.payload)
            self._pause.set(payload.paused)

        elif fact_type == FactType.PRODUCT_CREATED:
            payload = ProductCreatedPayload.model_validate(fact.payload)
            self._product_locks.setdefault(payload.product_id, Lock())
            self._verifications[payload.product_id] = ()
            self._products[payload.product_id] = Product(
                id=payload.product_id,
                name=payload.name,
                batch_id=payload.batch_id,
                origin=payload.origin,
                production_date=payload.production_date,
                current_owner=payload.producer,
                status=ProductStatus.CREATED,
                created_at=fact.recorded_at,
                last_transition_seq=fact.sequence_number,
            )
            self._next_id = max(self._next_id, payload.product_id + 1)

        elif fact_type == FactType.OWNERSHIP_TRANSFERRED:
            payload = OwnershipTransferredPayload.model_validate(fact.payload)
            self._replace(fact, current_owner=payload.to_owner)

        elif fact_type == FactType.STATUS_UPDATED:
            payload = StatusUpdatedPayload.model_validate(fact.payload)
            self._replace(fact, status=payload.new_status)

        elif fact_type == FactType.PRODUCT_VERIFIED:
            payload = ProductVerifiedPayload.model_validate(fact.payload)
            record = VerificationRecord(
                verifier=payload.verifier,
                timestamp=fact.recorded_at,
                certificate_ref=payload.certificate_ref,
                notes=payload.notes,
            )
            self._verifications[payload.product_id] = (
                self._verifications.get(payload.product_id, ()) + (record,)
            )
            self._replace(fact, status=ProductStatus.VERIFIED)

    def _replace(self, fact: TransitionFact, **changes) -> None:
        current = self._products.get(fact.product_id)
        if current is None:
            raise ChainError(
                f"Fact at sequence {fact.sequence_number} references unknown "
                f"product {fact.product_id}"
            )
        self._products[fact.product_id] = current.model_copy(
            update={**changes, "last_transition_seq": fact.sequence_number}
        )

    # ================================================================
    # QUERIES
    # ================================================================

    def get(self, product_id: int) -> Product:
        return self._snapshot(product_id)

    def exists(self, product_id: int) -> bool:
        return product_id in self._products

    def total_count(self) -> int:
        return len(self._products)

    def owner_of(self, product_id: int) -> str:
        return self._snapshot(product_id).current_owner

    def verifications_of(self, product_id: int) -> tuple[VerificationRecord, ...]:
        self._snapshot(product_id)
        return self._verifications.get(product_id, ())

    def products_owned_by(self, identity: str) -> list[Product]:
        """Products currently held by identity, ordered by id."""
        products = list(self._products.values())
        return sorted(
            (p for p in products if p.current_owner == identity),
            key=lambda p: p.id,
        )

    def is_paused(self) -> bool:
        return self._pause.paused

    # ================================================================
    # CHAIN INTEGRITY & REBUILD
    # ================================================================

    def verify_chain_integrity(self) -> bool:
        """
        Re-verify every fact in the log.

        Returns True if the chain is intact, False otherwise.
        """
        try:
            self.verify_fact_chain(self._fact_log.list_all())
        except ChainError as e:
            logger.error("Chain integrity check failed", error=str(e))
            return False
        return True

    @staticmethod
    def verify_fact_chain(facts: list[TransitionFact]) -> None:
        """
        Verify a complete fact chain, in order.

        Raises ChainError on the first gap, broken link or bad hash.
        """
        prev_hash = None
        expected_sequence = 0

        for fact in sorted(facts, key=lambda f: f.order_key):
            if fact.sequence_number != expected_sequence:
                raise ChainError(
                    f"Sequence number gap or out-of-order fact. "
                    f"Expected {expected_sequence}, got {fact.sequence_number}"
                )

            if fact.previous_fact_hash != prev_hash:
                raise ChainError(
                    f"Chain linkage broken at sequence {expected_sequence}. "
                    f"Expected previous hash '{prev_hash[:16] if prev_hash else 'None'}...', "
                    f"got '{fact.previous_fact_hash[:16] if fact.previous_fact_hash else 'None'}...'"
                )

            if not Hasher.verify_fact(fact.hashable_body(), fact.fact_hash, prev_hash):
                raise ChainError(
                    f"Hash verification failed at sequence {expected_sequence}"
                )

            try:
                fact.validate_chain_rules()
            except ValueError as e:
                raise ChainError(str(e)) from e

            prev_hash = fact.fact_hash
            expected_sequence += 1

    @classmethod
    def load_from_log(
        cls,
        fact_log: "FactLog",
        registry: Optional[RoleRegistry] = None,
        clock: Optional[Clock] = None,
        verify: bool = True,
    ) -> "ProductLedger":
        """
        Rebuild a ledger (and its registry) by replaying a fact log.

        The whole chain is verified before anything is replayed, so a
        tampered log never produces a ledger.

        Args:
            fact_log: Log to replay; new mutations are appended to it.
            registry: Empty registry to rebuild into. If None, one is
                      created over fact_log.
            clock: Clock for new mutations.
            verify: Verify the chain first (default True).

        Raises:
            ChainError: If chain integrity is violated.
        """
        if registry is None:
            registry = RoleRegistry(fact_log=fact_log, clock=clock)
        elif registry.fact_log is not fact_log:
            raise ValueError("registry must be bound to the fact log being loaded")
        elif registry.list_participants():
            raise ValueError("load_from_log requires an empty registry")

        facts = fact_log.list_all()
        if verify:
            cls.verify_fact_chain(facts)

        ledger = cls(registry=registry, clock=clock)
        for fact in facts:
            ledger._apply(fact)
            ledger._cursor.advance(fact)

        logger.info(
            "Ledger rebuilt from fact log",
            fact_count=len(facts),
            product_count=ledger.total_count(),
            participant_count=len(registry.list_participants()),
        )
        return ledger

    def refresh(self) -> int:
        """
        Apply facts appended to the log by other writers.

        Each new fact must extend the last applied one and carry a valid
        hash. Holds the log's append lock while catching up, so no local
        mutation interleaves. Returns the number of facts applied.

        Raises:
            ChainError: If a new fact does not continue the applied chain.
        """
        cursor = self._cursor
        with self._fact_log.begin_append():
            facts = self._fact_log.list_since(cursor.sequence)
            if facts:
                cursor.generation += 1
            for fact in facts:
                if fact.sequence_number != cursor.sequence + 1:
                    raise ChainError(
                        f"Sequence number gap or out-of-order fact. "
                        f"Expected {cursor.sequence + 1}, got {fact.sequence_number}"
                    )
                if fact.previous_fact_hash != cursor.fact_hash:
                    raise ChainError(
                        f"Chain linkage broken at sequence {fact.sequence_number}"
                    )
                if not Hasher.verify_fact(fact.hashable_body(), fact.fact_hash, cursor.fact_hash):
                    raise ChainError(
                        f"Hash verification failed at sequence {fact.sequence_number}"
                    )
                self._apply(fact)
                cursor.advance(fact)

        if facts:
            logger.info(
                "Ledger refreshed",
                fact_count=len(facts),
                last_sequence=cursor.sequence,
            )
        return len(facts)

