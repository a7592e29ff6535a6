"""
Canonical Participant Schema

A participant is an actor in the supply chain, identified by an opaque key
(typically a public address). Identity is resolved upstream; inside this
system an identity is just a string with a set of roles attached.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# The zero address is never a real participant.
NULL_ADDRESS = "0x0000000000000000000000000000000000000000"


class Role(str, Enum):
    """
    Capability tags granting permission to specific ledger operations.
    """
    PRODUCER = "producer"         # Registers products, sets created/dispatched
    DISTRIBUTOR = "distributor"   # Moves goods, sets in_transit/received/delivered
    RETAILER = "retailer"         # Receives and delivers to consumers
    REGULATOR = "regulator"       # Attaches verifications
    ADMIN = "admin"               # Grants roles, pauses the ledger


def is_null_identity(identity: Optional[str]) -> bool:
    """True for the null identity: None, blank, or the zero address."""
    if identity is None:
        return True
    stripped = identity.strip()
    return not stripped or stripped.lower() == NULL_ADDRESS


class Participant(BaseModel):
    """
    Registration record for one identity.

    Roles are additive. A participant is created on its first role grant
    and is never deleted.
    """
    model_config = ConfigDict(frozen=True)

    identity: str = Field(
        ...,
        min_length=1,
        description="Opaque participant key (e.g. a public address)"
    )

    roles: frozenset[Role] = Field(
        default_factory=frozenset,
        description="Every role granted to this identity so far"
    )

    registered_at: datetime = Field(
        ...,
        description="When the first role was granted"
    )

    registered_by: str = Field(
        ...,
        description="Admin identity that made the first grant"
    )

    def has_role(self, role: Role) -> bool:
        return role in self.roles
