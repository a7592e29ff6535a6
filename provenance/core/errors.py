"""
Ledger error taxonomy.

Every rejection is synchronous and terminal. The core never retries; the
caller decides whether to retry (e.g. after acquiring a missing role) or
surface the error. A raised LedgerError guarantees no state change and no
emitted fact.
"""

from enum import Enum
from typing import Any, Iterable, Optional

from ..schemas import Role


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    EMPTY_FIELD = "empty_field"
    FUTURE_DATE = "future_date"
    INVALID_IDENTITY = "invalid_identity"
    SELF_TRANSFER = "self_transfer"
    INELIGIBLE_RECIPIENT = "ineligible_recipient"
    SYSTEM_PAUSED = "system_paused"


class LedgerError(Exception):
    """Base exception for ledger rejections."""
    kind: ErrorKind

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": str(self)}


class UnauthorizedError(LedgerError):
    """
    Raised when the caller lacks the role (or ownership) an operation needs.

    permitted_roles is set when the rejection is role-based, so callers can
    tell the user which role would have been accepted.
    """
    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str, permitted_roles: Optional[Iterable[Role]] = None):
        super().__init__(message)
        self.permitted_roles = frozenset(permitted_roles) if permitted_roles else frozenset()

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.permitted_roles:
            data["permitted_roles"] = sorted(r.value for r in self.permitted_roles)
        return data


class NotFoundError(LedgerError):
    """Raised when a product id does not exist."""
    kind = ErrorKind.NOT_FOUND

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} does not exist")
        self.product_id = product_id


class EmptyFieldError(LedgerError):
    """Raised when a required text field is empty."""
    kind = ErrorKind.EMPTY_FIELD

    def __init__(self, field_name: str):
        super().__init__(f"Field '{field_name}' cannot be empty")
        self.field_name = field_name


class FutureDateError(LedgerError):
    kind = ErrorKind.FUTURE_DATE


class InvalidIdentityError(LedgerError):
    kind = ErrorKind.INVALID_IDENTITY


class SelfTransferError(LedgerError):
    kind = ErrorKind.SELF_TRANSFER


class IneligibleRecipientError(LedgerError):
    kind = ErrorKind.INELIGIBLE_RECIPIENT


class SystemPausedError(LedgerError):
    kind = ErrorKind.SYSTEM_PAUSED


class ChainError(Exception):
    """Raised when fact-log integrity is compromised."""
    pass
