"""
Persistence Layer for the Provenance Ledger

Provides:
- FactLog abstraction (in-memory for dev/tests, PostgreSQL for prod)
- PostgreSQL schema for the append-only fact table
- Connection and ledger configuration from the environment
"""

from .store import (
    AppendContext,
    ChainHead,
    FactLog,
    InMemoryFactLog,
    PostgresFactLog,
    FactLogError,
    ConcurrencyError,
    ChainIntegrityError,
    LockTimeoutError,
)
from .config import (
    DatabaseConfig,
    FactLogDriver,
    LedgerConfig,
    get_database_url,
    get_factlog_driver,
)

__all__ = [
    "AppendContext",
    "ChainHead",
    "FactLog",
    "InMemoryFactLog",
    "PostgresFactLog",
    "FactLogError",
    "ConcurrencyError",
    "ChainIntegrityError",
    "LockTimeoutError",
    "DatabaseConfig",
    "FactLogDriver",
    "LedgerConfig",
    "get_database_url",
    "get_factlog_driver",
]
