# Core ledger services
from .hasher import Hasher, CanonicalSerializationError
from .errors import (
    ErrorKind,
    LedgerError,
    UnauthorizedError,
    NotFoundError,
    EmptyFieldError,
    FutureDateError,
    InvalidIdentityError,
    SelfTransferError,
    IneligibleRecipientError,
    SystemPausedError,
    ChainError,
)
from .policy import STATUS_ROLE_POLICY, SUPPLY_CHAIN_ROLES
from .registry import PauseSwitch, RoleRegistry
from .ledger import ProductLedger
from .history import HistoryReconstructor

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "ErrorKind",
    "LedgerError",
    "UnauthorizedError",
    "NotFoundError",
    "EmptyFieldError",
    "FutureDateError",
    "InvalidIdentityError",
    "SelfTransferError",
    "IneligibleRecipientError",
    "SystemPausedError",
    "ChainError",
    "STATUS_ROLE_POLICY",
    "SUPPLY_CHAIN_ROLES",
    "PauseSwitch",
    "RoleRegistry",
    "ProductLedger",
    "HistoryReconstructor",
]
