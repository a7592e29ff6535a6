"""Shared fixtures: a frozen clock, a fresh fact log and a staffed ledger."""

from datetime import datetime, timedelta, timezone

import pytest

from provenance.core import HistoryReconstructor, ProductLedger, RoleRegistry
from provenance.db import InMemoryFactLog
from provenance.observability import reset_metrics
from provenance.schemas import Role

ADMIN = "0xadmin"
PRODUCER = "0xfarm"
DISTRIBUTOR = "0xship"
RETAILER = "0xshop"
REGULATOR = "0xinspector"
STRANGER = "0xnobody"

# Facts written by the `registry` + `ledger` fixtures before any test runs:
# bootstrap + four role grants.
SETUP_FACTS = 5


class FrozenClock:
    """Deterministic clock; advance() moves time forward explicitly."""

    def __init__(self, start=datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def fresh_metrics():
    return reset_metrics()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def fact_log():
    return InMemoryFactLog()


@pytest.fixture
def empty_registry(fact_log, clock):
    return RoleRegistry(fact_log=fact_log, clock=clock)


@pytest.fixture
def registry(empty_registry):
    empty_registry.bootstrap(ADMIN)
    return empty_registry


@pytest.fixture
def ledger(registry, clock):
    registry.grant_role(Role.PRODUCER, PRODUCER, ADMIN)
    registry.grant_role(Role.DISTRIBUTOR, DISTRIBUTOR, ADMIN)
    registry.grant_role(Role.RETAILER, RETAILER, ADMIN)
    registry.grant_role(Role.REGULATOR, REGULATOR, ADMIN)
    return ProductLedger(registry=registry, clock=clock)


@pytest.fixture
def history(fact_log):
    return HistoryReconstructor(fact_log)


@pytest.fixture
def coffee(ledger, clock):
    """A registered product owned by PRODUCER; returns its id."""
    return ledger.register(
        "Organic Coffee Beans",
        "BATCH-2026-001",
        "Huila, Colombia",
        clock() - timedelta(days=3),
        caller=PRODUCER,
    )
