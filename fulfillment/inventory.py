"""
Box inventory ledger. A batch of signed deltas is applied all-or-nothing; no product may go below zero.
"""
import logging
from dataclasses import dataclass, field

from fulfillment.errors import BoxNotFound, InvalidAdjustmentFormat, ResourceExhausted
from fulfillment.metrics import inventory_adjustments_total
from fulfillment.models import BOXES
from fulfillment.store import EntityStore, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Adjustment:
    product_id: str
    delta: int


@dataclass
class InventoryResult:
    box_id: str
    deltas: dict[str, int]
    levels: dict[str, int] = field(default_factory=dict)


def aggregate_adjustments(adjustments) -> dict[str, int]:
    """Validate a batch and sum deltas per product. Accepts Adjustment objects or {product_id, delta} dicts."""
    if not adjustments:
        raise InvalidAdjustmentFormat("adjustment batch is empty", field="adjustments")
    totals: dict[str, int] = {}
    for item in adjustments:
        if isinstance(item, dict):
            product_id, delta = item.get("product_id"), item.get("delta")
        else:
            product_id, delta = getattr(item, "product_id", None), getattr(item, "delta", None)
        if not isinstance(product_id, str) or not product_id.strip():
            raise InvalidAdjustmentFormat("product_id must be a non-empty string", field="product_id")
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidAdjustmentFormat(f"delta for {product_id} must be an integer", field="delta")
        if delta == 0:
            raise InvalidAdjustmentFormat(f"delta for {product_id} must be non-zero", field="delta")
        totals[product_id] = totals.get(product_id, 0) + delta
    return totals


class InventoryLedger:
    def __init__(self, store: EntityStore):
        self._store = store

    async def stage(self, tx: Transaction, box_id: str, deltas: dict[str, int]) -> dict[str, int]:
        """Check and stage increments inside an open transaction. Returns the resulting levels."""
        doc = await tx.get(BOXES, box_id)
        if doc is None:
            raise BoxNotFound(box_id)
        inventory = doc.get("inventory") or {}
        levels: dict[str, int] = {}
        for product_id, delta in sorted(deltas.items()):
            current = int(inventory.get(product_id, 0))
            if current + delta < 0:
                raise ResourceExhausted(product_id, available=current, requested=delta)
            levels[product_id] = current + delta
        for product_id, delta in deltas.items():
            if delta:
                tx.increment(BOXES, box_id, "inventory", product_id, delta)
        return levels

    async def apply_adjustments(self, box_id: str, adjustments, reason: str) -> InventoryResult:
        if not box_id:
            raise InvalidAdjustmentFormat("box_id is required", field="box_id")
        if not reason or not reason.strip():
            raise InvalidAdjustmentFormat("reason is required", field="reason")
        deltas = aggregate_adjustments(adjustments)

        async def _apply(tx: Transaction) -> dict[str, int]:
            return await self.stage(tx, box_id, deltas)

        try:
            levels = await self._store.run_transaction(_apply)
        except ResourceExhausted as e:
            inventory_adjustments_total.labels(outcome="exhausted").inc()
            logger.info("Inventory adjustment rejected for box=%s: %s", box_id, e)
            raise
        except BoxNotFound:
            inventory_adjustments_total.labels(outcome="box_not_found").inc()
            raise
        inventory_adjustments_total.labels(outcome="applied").inc()
        logger.info("Inventory adjusted box=%s deltas=%s reason=%r", box_id, deltas, reason)
        return InventoryResult(box_id=box_id, deltas=deltas, levels=levels)
