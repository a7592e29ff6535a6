"""
Canonical Transition Fact Schema

This is an append-only ledger, not CRUD.
Products are not "edited". Things happen to them.

Each fact:
- Records exactly one successful mutation
- Is hashed
- Is chained to the fact before it
- Is never updated or deleted
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .participant import Role
from .product import ProductStatus


class FactType(str, Enum):
    """
    All possible fact types.
    You can add more later, never remove.
    """
    # Product lifecycle
    PRODUCT_CREATED = "PRODUCT_CREATED"
    OWNERSHIP_TRANSFERRED = "OWNERSHIP_TRANSFERRED"
    STATUS_UPDATED = "STATUS_UPDATED"
    PRODUCT_VERIFIED = "PRODUCT_VERIFIED"

    # Access control
    ROLE_GRANTED = "ROLE_GRANTED"
    LEDGER_PAUSED = "LEDGER_PAUSED"
    LEDGER_UNPAUSED = "LEDGER_UNPAUSED"


class EntityType(str, Enum):
    """What a fact is about."""
    PRODUCT = "product"
    PARTICIPANT = "participant"
    LEDGER = "ledger"


PRODUCT_FACT_TYPES = frozenset({
    FactType.PRODUCT_CREATED,
    FactType.OWNERSHIP_TRANSFERRED,
    FactType.STATUS_UPDATED,
    FactType.PRODUCT_VERIFIED,
})


# ============================================================
# Fact Payloads
# ============================================================

class ProductCreatedPayload(BaseModel):
    """
    Payload for PRODUCT_CREATED.
    First fact in every product's history.
    """
    product_id: int = Field(..., ge=1)
    name: str = Field(..., min_length=1)
    batch_id: str = ""
    origin: str = ""
    production_date: datetime
    producer: str

    schema_version: int = 1


class OwnershipTransferredPayload(BaseModel):
    """
    Payload for OWNERSHIP_TRANSFERRED.

    metadata is an opaque pass-through (often JSON-as-string describing the
    shipment). The ledger never parses it.
    """
    product_id: int = Field(..., ge=1)
    from_owner: str
    to_owner: str
    metadata: str = ""

    schema_version: int = 1


class StatusUpdatedPayload(BaseModel):
    """Payload for STATUS_UPDATED."""
    product_id: int = Field(..., ge=1)
    old_status: ProductStatus
    new_status: ProductStatus
    notes: str = ""
    updated_by: str

    schema_version: int = 1


class ProductVerifiedPayload(BaseModel):
    """
    Payload for PRODUCT_VERIFIED.

    Verification always moves the product to VERIFIED; previous_status
    records where it was when the regulator certified it.
    """
    product_id: int = Field(..., ge=1)
    verifier: str
    certificate_ref: str = Field(..., min_length=1)
    notes: str = ""
    previous_status: ProductStatus

    schema_version: int = 1


class RoleGrantedPayload(BaseModel):
    """Payload for ROLE_GRANTED. Emitted on every grant, including repeats."""
    role: Role
    identity: str = Field(..., min_length=1)
    granted_by: str

    schema_version: int = 1


class LedgerPauseChangedPayload(BaseModel):
    """Payload for LEDGER_PAUSED / LEDGER_UNPAUSED."""
    paused: bool
    changed_by: str

    schema_version: int = 1


# ============================================================
# The Core Fact Object
# ============================================================

class TransitionFact(BaseModel):
    """
    The immutable fact record.

    Rules:
    - No UPDATE
    - No DELETE
    - Ever

    Chain Integrity Rules:
    - sequence_number is gap-free and monotonically increasing (0, 1, 2, ...)
    - previous_fact_hash is None for the genesis fact (sequence 0) only
    - fact_hash must be verifiable from hashable_body() + previous_fact_hash
    """
    fact_id: UUID = Field(
        ...,
        description="Unique identifier for this fact"
    )

    sequence_number: int = Field(
        ...,
        ge=0,
        description="Position in the total order of the fact log"
    )

    log_index: int = Field(
        default=0,
        ge=0,
        description="Secondary order for facts emitted in the same logical step"
    )

    fact_type: FactType
    entity_type: EntityType

    product_id: Optional[int] = Field(
        default=None,
        ge=1,
        description="Product this fact belongs to (None for non-product facts)"
    )

    actor: str = Field(
        ...,
        description="Identity that performed the mutation"
    )

    recorded_at: datetime = Field(
        ...,
        description="When the mutation was committed"
    )

    payload: dict[str, Any] = Field(
        ...,
        description="JSON-mode payload for this fact type"
    )

    previous_fact_hash: Optional[str] = Field(
        default=None,
        description="SHA-256 of the previous fact. None for genesis (seq 0) only."
    )
    fact_hash: str = Field(
        ...,
        description="SHA-256 of this fact (canonical body + previous hash)"
    )

    @property
    def is_genesis(self) -> bool:
        return self.sequence_number == 0

    @property
    def order_key(self) -> tuple[int, int]:
        """Native total order of the log."""
        return (self.sequence_number, self.log_index)

    def hashable_body(self) -> dict[str, Any]:
        """Everything the chain hash commits to."""
        return self.body_for_hash(
            fact_type=self.fact_type,
            entity_type=self.entity_type,
            product_id=self.product_id,
            actor=self.actor,
            recorded_at=self.recorded_at,
            payload=self.payload,
        )

    @staticmethod
    def body_for_hash(
        fact_type: FactType,
        entity_type: EntityType,
        product_id: Optional[int],
        actor: str,
        recorded_at: datetime,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        return {
            "fact_type": fact_type,
            "entity_type": entity_type,
            "product_id": product_id,
            "actor": actor,
            "recorded_at": recorded_at,
            "payload": payload,
        }

    def validate_chain_rules(self) -> None:
        """
        Validate chain linkage rules.

        Raises ValueError if rules are violated.
        """
        if self.sequence_number == 0:
            if self.previous_fact_hash is not None:
                raise ValueError(
                    f"Genesis fact (sequence 0) must have previous_fact_hash=None, "
                    f"got: {self.previous_fact_hash}"
                )
        else:
            if self.previous_fact_hash is None:
                raise ValueError(
                    f"Non-genesis fact (sequence {self.sequence_number}) must have "
                    f"previous_fact_hash set, got None"
                )
            if len(self.previous_fact_hash) != 64:
                raise ValueError(
                    f"previous_fact_hash must be 64 hex characters, "
                    f"got {len(self.previous_fact_hash)}"
                )
