# Canonical Schemas for the Supply-Chain Provenance Ledger
# These define the contract every recorded transition must obey.

from .participant import NULL_ADDRESS, Participant, Role, is_null_identity
from .product import Product, ProductStatus, VerificationRecord
from .facts import (
    PRODUCT_FACT_TYPES,
    EntityType,
    FactType,
    LedgerPauseChangedPayload,
    OwnershipTransferredPayload,
    ProductCreatedPayload,
    ProductVerifiedPayload,
    RoleGrantedPayload,
    StatusUpdatedPayload,
    TransitionFact,
)
from .timeline import TimelineEntry

__all__ = [
    # Participant
    "NULL_ADDRESS",
    "Participant",
    "Role",
    "is_null_identity",
    # Product
    "Product",
    "ProductStatus",
    "VerificationRecord",
    # Facts
    "PRODUCT_FACT_TYPES",
    "EntityType",
    "FactType",
    "LedgerPauseChangedPayload",
    "OwnershipTransferredPayload",
    "ProductCreatedPayload",
    "ProductVerifiedPayload",
    "RoleGrantedPayload",
    "StatusUpdatedPayload",
    "TransitionFact",
    # Timeline
    "TimelineEntry",
]
