"""
Authorization Policy

Pure predicates over a caller's role set. No ledger state, no I/O.

The ledger calls these at the top of each operation; the status table is
plain data so the policy can be read, tested and changed on its own.
"""

from collections.abc import Set
from types import MappingProxyType
from typing import Mapping

from ..schemas import ProductStatus, Role


# Roles that may hold custody of a product.
SUPPLY_CHAIN_ROLES: frozenset[Role] = frozenset({
    Role.PRODUCER,
    Role.DISTRIBUTOR,
    Role.RETAILER,
})

# Target status -> roles allowed to set it.
# Only the target is checked; predecessors are not.
STATUS_ROLE_POLICY: Mapping[ProductStatus, frozenset[Role]] = MappingProxyType({
    ProductStatus.CREATED: frozenset({Role.PRODUCER}),
    ProductStatus.DISPATCHED: frozenset({Role.PRODUCER}),
    ProductStatus.IN_TRANSIT: frozenset({Role.DISTRIBUTOR, Role.PRODUCER}),
    ProductStatus.RECEIVED: frozenset({Role.RETAILER, Role.DISTRIBUTOR}),
    ProductStatus.DELIVERED: frozenset({Role.RETAILER, Role.DISTRIBUTOR}),
    ProductStatus.VERIFIED: frozenset({Role.REGULATOR}),
    ProductStatus.EXCEPTION: SUPPLY_CHAIN_ROLES | {Role.REGULATOR},
})


def permitted_roles_for(status: ProductStatus) -> frozenset[Role]:
    return STATUS_ROLE_POLICY[status]


def can_register(roles: Set[Role]) -> bool:
    return Role.PRODUCER in roles


def can_set_status(roles: Set[Role], status: ProductStatus) -> bool:
    return not roles.isdisjoint(STATUS_ROLE_POLICY[status])


def can_verify(roles: Set[Role]) -> bool:
    return Role.REGULATOR in roles


def can_receive_custody(roles: Set[Role]) -> bool:
    return not roles.isdisjoint(SUPPLY_CHAIN_ROLES)


def can_administer(roles: Set[Role]) -> bool:
    return Role.ADMIN in roles


def describe_roles(roles: Set[Role]) -> str:
    """'producer', 'producer or distributor', 'a, b or c' in Role order."""
    names = [r.value for r in Role if r in roles]
    if not names:
        return "nobody"
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + " or " + names[-1]


def status_rejection_message(status: ProductStatus) -> str:
    """Distinct rejection text per status class, naming who may set it."""
    statuses = [s.label for s in ProductStatus if STATUS_ROLE_POLICY[s] == STATUS_ROLE_POLICY[status]]
    target = " or ".join(statuses)
    return f"Only {describe_roles(STATUS_ROLE_POLICY[status])} can set {target} status"
