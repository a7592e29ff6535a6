"""
Service Wiring

Builds the fact log, role registry, ledger and history reconstructor from
configuration. Nothing here is global; callers hold the returned
ProvenanceServices and pass it where it is needed.

Mode is determined by environment variables:
- FACTLOG_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: in-memory (development and tests)

A configured database that cannot be reached is an error; there is no
silent fallback to memory.
"""

from dataclasses import dataclass
from typing import Optional

import psycopg2

from .core import HistoryReconstructor, ProductLedger, RoleRegistry
from .core.recording import Clock
from .db.config import (
    DatabaseConfig,
    FactLogDriver,
    LedgerConfig,
    get_database_url,
    get_factlog_driver,
)
from .db.store import FactLog, InMemoryFactLog, PostgresFactLog
from .observability import get_logger

logger = get_logger(__name__)


@dataclass
class ProvenanceServices:
    """Everything a process needs to serve the ledger."""
    fact_log: FactLog
    registry: RoleRegistry
    ledger: ProductLedger
    history: HistoryReconstructor


def create_fact_log(
    driver: Optional[FactLogDriver] = None,
    db_config: Optional[DatabaseConfig] = None,
    ledger_config: Optional[LedgerConfig] = None,
) -> FactLog:
    """
    Create the FactLog selected by configuration.

    Returns:
        InMemoryFactLog for development/testing
        PostgresFactLog when a database is configured
    """
    driver = driver or get_factlog_driver()

    if driver == FactLogDriver.MEMORY:
        logger.info("Using in-memory fact log (no persistence)")
        return InMemoryFactLog()

    if db_config is None:
        url = get_database_url()
        db_config = DatabaseConfig.from_url(url) if url else DatabaseConfig.from_env()
    ledger_config = ledger_config or LedgerConfig.from_env()

    dsn = db_config.to_dsn()

    def connection_factory():
        return psycopg2.connect(dsn)

    # Fail fast on a bad connection
    connection_factory().close()

    fact_log = PostgresFactLog(
        connection_factory,
        lock_timeout_ms=ledger_config.lock_timeout_ms,
        statement_timeout_ms=ledger_config.statement_timeout_ms,
    )
    logger.info(
        "PostgreSQL fact log ready",
        database=db_config.to_url(include_password=False),
    )
    return fact_log


def load_services(
    fact_log: Optional[FactLog] = None,
    ledger_config: Optional[LedgerConfig] = None,
    clock: Optional[Clock] = None,
) -> ProvenanceServices:
    """
    Build the services over a fact log, replaying it if it has history.

    An empty log with an admin identity configured is bootstrapped with
    that admin, mirroring a fresh deployment.

    Raises:
        ChainError: If the existing log fails verification
    """
    fact_log = fact_log if fact_log is not None else create_fact_log(ledger_config=ledger_config)
    ledger_config = ledger_config or LedgerConfig.from_env()

    fact_count = fact_log.get_fact_count()
    if fact_count == 0:
        registry = RoleRegistry(fact_log=fact_log, clock=clock)
        ledger = ProductLedger(registry=registry, clock=clock)
        if ledger_config.admin_identity:
            registry.bootstrap(ledger_config.admin_identity)
        logger.info("Empty fact log - created fresh ledger")
    else:
        logger.info("Loading facts from log", fact_count=fact_count)
        ledger = ProductLedger.load_from_log(fact_log, clock=clock)
        registry = ledger.registry

    return ProvenanceServices(
        fact_log=fact_log,
        registry=registry,
        ledger=ledger,
        history=HistoryReconstructor(fact_log),
    )
