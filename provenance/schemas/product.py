"""
Canonical Product Schema

A Product is the current-state projection of every transition recorded
for one product id. The fact log is the source of truth; this is a view.
"""

from datetime import datetime
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field


class ProductStatus(str, Enum):
    """
    Lifecycle stage of a product.

    created -> dispatched -> in_transit -> received -> delivered -> verified,
    with exception reachable from anywhere. The ledger checks who may set a
    status, not which status came before it.
    """
    CREATED = "created"
    DISPATCHED = "dispatched"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    DELIVERED = "delivered"
    VERIFIED = "verified"
    EXCEPTION = "exception"

    @property
    def code(self) -> int:
        """Numeric status code used by on-chain deployments (0-6)."""
        return _STATUS_CODES.index(self)

    @property
    def label(self) -> str:
        """Display name, e.g. 'InTransit'."""
        return "".join(part.capitalize() for part in self.value.split("_"))

    @classmethod
    def coerce(cls, value: Union["ProductStatus", str, int]) -> "ProductStatus":
        """
        Accept a status, its value, its label or its numeric code.

        Raises ValueError for anything else.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid product status: {value!r}")
        if isinstance(value, int):
            if 0 <= value < len(_STATUS_CODES):
                return _STATUS_CODES[value]
            raise ValueError(f"Invalid product status code: {value}")
        if isinstance(value, str):
            for status in cls:
                if value in (status.value, status.label):
                    return status
        raise ValueError(f"Invalid product status: {value!r}")


_STATUS_CODES = (
    ProductStatus.CREATED,
    ProductStatus.DISPATCHED,
    ProductStatus.IN_TRANSIT,
    ProductStatus.RECEIVED,
    ProductStatus.DELIVERED,
    ProductStatus.VERIFIED,
    ProductStatus.EXCEPTION,
)


class Product(BaseModel):
    """
    Current state of a tracked product.

    Snapshots are immutable; every mutation replaces the snapshot.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=1, description="Sequential id, starting at 1, never reused")
    name: str = Field(..., min_length=1)
    batch_id: str = Field(default="", description="Opaque grouping key")
    origin: str = Field(default="", description="Provenance description")
    production_date: datetime
    current_owner: str = Field(..., description="Identity holding custody")
    status: ProductStatus = ProductStatus.CREATED
    created_at: datetime = Field(..., description="Registration time (immutable)")
    last_transition_seq: int = Field(
        ...,
        ge=0,
        description="Fact-log sequence number of the most recent mutation"
    )


class VerificationRecord(BaseModel):
    """
    A certification attached by a regulator.

    Never edited, never removed.
    """
    model_config = ConfigDict(frozen=True)

    verifier: str
    timestamp: datetime
    certificate_ref: str = Field(
        ...,
        min_length=1,
        description="Opaque certificate hash or identifier (e.g. an IPFS CID)"
    )
    notes: str = ""
