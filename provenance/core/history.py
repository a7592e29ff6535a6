"""
History Reconstructor: read model over the fact log.

Builds a product's timeline, custody chain and status history straight
from the ordered facts. Holds no state of its own and never mutates the
ledger, so it can be rebuilt or restarted at any time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel

from ..schemas import (
    FactType,
    OwnershipTransferredPayload,
    ProductCreatedPayload,
    ProductStatus,
    ProductVerifiedPayload,
    StatusUpdatedPayload,
    TimelineEntry,
    TransitionFact,
)

if TYPE_CHECKING:
    from ..db.store import FactLog


_DETAIL_EXCLUDE = {"product_id", "schema_version"}


def _describe_created(payload: ProductCreatedPayload) -> str:
    return f"Product registered: {payload.name}"


def _describe_transfer(payload: OwnershipTransferredPayload) -> str:
    return f"Product transferred to new owner {payload.to_owner}"


def _describe_status(payload: StatusUpdatedPayload) -> str:
    return f"Status changed to: {payload.new_status.label}"


def _describe_verified(payload: ProductVerifiedPayload) -> str:
    return f"Product verified by regulator {payload.verifier}"


# fact type -> (payload model, description builder)
_RENDERERS: dict[FactType, tuple[type[BaseModel], Callable[[Any], str]]] = {
    FactType.PRODUCT_CREATED: (ProductCreatedPayload, _describe_created),
    FactType.OWNERSHIP_TRANSFERRED: (OwnershipTransferredPayload, _describe_transfer),
    FactType.STATUS_UPDATED: (StatusUpdatedPayload, _describe_status),
    FactType.PRODUCT_VERIFIED: (ProductVerifiedPayload, _describe_verified),
}


class HistoryReconstructor:
    """
    Derives per-product history views from a FactLog.

    Every call re-reads the log, so results always reflect all committed
    mutations in commit order.
    """

    def __init__(self, fact_log: FactLog):
        self._fact_log = fact_log

    def _facts_for(self, product_id: int) -> list[TransitionFact]:
        facts = self._fact_log.list_for_product(product_id)
        return sorted(facts, key=lambda f: f.order_key)

    def build_timeline(self, product_id: int) -> list[TimelineEntry]:
        """
        One entry per fact recorded for the product, in log order.

        Unknown products yield an empty list.
        """
        return [self._to_entry(fact) for fact in self._facts_for(product_id)]

    def custody_chain(self, product_id: int) -> list[str]:
        """Every identity that has held the product, in order."""
        chain: list[str] = []
        for fact in self._facts_for(product_id):
            if fact.fact_type == FactType.PRODUCT_CREATED:
                chain.append(ProductCreatedPayload.model_validate(fact.payload).producer)
            elif fact.fact_type == FactType.OWNERSHIP_TRANSFERRED:
                chain.append(OwnershipTransferredPayload.model_validate(fact.payload).to_owner)
        return chain

    def status_history(self, product_id: int) -> list[ProductStatus]:
        """Every status the product has held, in order (repeats included)."""
        statuses: list[ProductStatus] = []
        for fact in self._facts_for(product_id):
            if fact.fact_type == FactType.PRODUCT_CREATED:
                statuses.append(ProductStatus.CREATED)
            elif fact.fact_type == FactType.STATUS_UPDATED:
                statuses.append(StatusUpdatedPayload.model_validate(fact.payload).new_status)
            elif fact.fact_type == FactType.PRODUCT_VERIFIED:
                statuses.append(ProductStatus.VERIFIED)
        return statuses

    @staticmethod
    def _to_entry(fact: TransitionFact) -> TimelineEntry:
        renderer = _RENDERERS.get(fact.fact_type)
        if renderer is None:
            description = fact.fact_type.value.replace("_", " ").capitalize()
            details = {k: v for k, v in fact.payload.items() if k not in _DETAIL_EXCLUDE}
        else:
            model, describe = renderer
            payload = model.model_validate(fact.payload)
            description = describe(payload)
            details = payload.model_dump(mode="json", exclude=_DETAIL_EXCLUDE)

        return TimelineEntry(
            sequence_number=fact.sequence_number,
            log_index=fact.log_index,
            kind=fact.fact_type,
            actor=fact.actor,
            occurred_at=fact.recorded_at,
            description=description,
            details=details,
            fact_hash=fact.fact_hash,
        )
