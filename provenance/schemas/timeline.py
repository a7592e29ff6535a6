"""
Timeline read model.

One entry per transition fact, in log order. Plain data only, so API and
UI layers can serialize it without knowing about the ledger.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .facts import FactType


class TimelineEntry(BaseModel):
    """A single step in a product's history."""
    model_config = ConfigDict(frozen=True)

    sequence_number: int = Field(..., ge=0)
    log_index: int = Field(default=0, ge=0)
    kind: FactType
    actor: str
    occurred_at: datetime
    description: str
    details: dict[str, Any] = Field(default_factory=dict)
    fact_hash: str

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation."""
        return self.model_dump(mode="json")
