"""
Tests for the pure authorization predicates.
"""

import pytest

from provenance.core.policy import (
    STATUS_ROLE_POLICY,
    SUPPLY_CHAIN_ROLES,
    can_administer,
    can_receive_custody,
    can_register,
    can_set_status,
    can_verify,
    describe_roles,
    permitted_roles_for,
    status_rejection_message,
)
from provenance.schemas import ProductStatus, Role

NO_ROLES = frozenset()


class TestStatusPolicy:
    """The target-status table."""

    def test_every_status_has_an_entry(self):
        assert set(STATUS_ROLE_POLICY) == set(ProductStatus)

    def test_policy_is_read_only(self):
        with pytest.raises(TypeError):
            STATUS_ROLE_POLICY[ProductStatus.CREATED] = frozenset({Role.ADMIN})

    @pytest.mark.parametrize("status,role,allowed", [
        (ProductStatus.CREATED, Role.PRODUCER, True),
        (ProductStatus.DISPATCHED, Role.PRODUCER, True),
        (ProductStatus.DISPATCHED, Role.DISTRIBUTOR, False),
        (ProductStatus.IN_TRANSIT, Role.DISTRIBUTOR, True),
        (ProductStatus.IN_TRANSIT, Role.PRODUCER, True),
        (ProductStatus.IN_TRANSIT, Role.RETAILER, False),
        (ProductStatus.RECEIVED, Role.RETAILER, True),
        (ProductStatus.RECEIVED, Role.DISTRIBUTOR, True),
        (ProductStatus.RECEIVED, Role.PRODUCER, False),
        (ProductStatus.DELIVERED, Role.RETAILER, True),
        (ProductStatus.VERIFIED, Role.REGULATOR, True),
        (ProductStatus.VERIFIED, Role.PRODUCER, False),
        (ProductStatus.EXCEPTION, Role.PRODUCER, True),
        (ProductStatus.EXCEPTION, Role.REGULATOR, True),
        (ProductStatus.EXCEPTION, Role.ADMIN, False),
    ])
    def test_single_role(self, status, role, allowed):
        assert can_set_status(frozenset({role}), status) is allowed

    def test_admin_alone_sets_nothing(self):
        admin = frozenset({Role.ADMIN})
        assert not any(can_set_status(admin, status) for status in ProductStatus)

    def test_any_matching_role_is_enough(self):
        assert can_set_status(frozenset({Role.ADMIN, Role.REGULATOR}), ProductStatus.VERIFIED)

    def test_permitted_roles_for(self):
        assert permitted_roles_for(ProductStatus.IN_TRANSIT) == {Role.PRODUCER, Role.DISTRIBUTOR}


class TestPredicates:

    def test_register_needs_producer(self):
        assert can_register(frozenset({Role.PRODUCER}))
        assert not can_register(frozenset({Role.DISTRIBUTOR, Role.ADMIN}))
        assert not can_register(NO_ROLES)

    def test_verify_needs_regulator(self):
        assert can_verify(frozenset({Role.REGULATOR}))
        assert not can_verify(frozenset({Role.ADMIN}))

    def test_custody_needs_supply_chain_role(self):
        for role in SUPPLY_CHAIN_ROLES:
            assert can_receive_custody(frozenset({role}))
        assert not can_receive_custody(frozenset({Role.REGULATOR, Role.ADMIN}))
        assert not can_receive_custody(NO_ROLES)

    def test_administer_needs_admin(self):
        assert can_administer(frozenset({Role.ADMIN}))
        assert not can_administer(frozenset({Role.PRODUCER}))


class TestMessages:

    def test_describe_roles_stable_order(self):
        assert describe_roles({Role.PRODUCER}) == "producer"
        assert describe_roles({Role.DISTRIBUTOR, Role.PRODUCER}) == "producer or distributor"
        assert describe_roles(SUPPLY_CHAIN_ROLES | {Role.REGULATOR}) == (
            "producer, distributor, retailer or regulator"
        )
        assert describe_roles(set()) == "nobody"

    def test_rejection_messages_name_status_class(self):
        assert status_rejection_message(ProductStatus.DISPATCHED) == (
            "Only producer can set Created or Dispatched status"
        )
        assert status_rejection_message(ProductStatus.RECEIVED) == (
            "Only distributor or retailer can set Received or Delivered status"
        )
        assert status_rejection_message(ProductStatus.IN_TRANSIT) == (
            "Only producer or distributor can set InTransit status"
        )
        assert status_rejection_message(ProductStatus.VERIFIED) == (
            "Only regulator can set Verified status"
        )
