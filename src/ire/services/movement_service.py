from __future__ import annotations

import logging
from typing import Iterable, Optional

from ire.domain.errors import AppError, NotFoundError, ValidationError
from ire.domain.models import MOVEMENT_TYPES, BulkMovementResult, StockMovement
from ire.domain.validation import to_number
from ire.repositories.contracts import LedgerRepository

log = logging.getLogger("ire.ledger")

EDITABLE_FIELDS = (
    "ingredient_id",
    "movement_type",
    "quantity",
    "unit_price",
    "total_price",
    "supplier",
    "reference_no",
    "reason",
    "note",
)


def signed_effect(movement_type: str, quantity: float) -> float:
    """Effect of a movement on current_qty.

    in/out/waste take a positive magnitude (+q, -q, -q); an adjustment
    carries its own sign and must be non-zero.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement type: {movement_type}")
    qty = to_number(quantity, "Quantity", min_value=None)
    if movement_type == "adjustment":
        if qty == 0:
            raise ValidationError("Adjustment quantity must be non-zero.")
        return qty
    if qty <= 0:
        raise ValidationError("Quantity must be > 0.")
    return qty if movement_type == "in" else -qty


def _total(unit_price: Optional[float], total_price: Optional[float], quantity: float) -> Optional[float]:
    if unit_price is not None:
        unit_price = to_number(unit_price, "Unit price")
    if total_price is not None:
        return to_number(total_price, "Total price")
    if unit_price is not None:
        return unit_price * abs(float(quantity))
    return None


class MovementService:
    """Stock ledger. Every change to an ingredient's quantity is a movement row."""

    def __init__(self, repo: LedgerRepository):
        self.repo = repo

    def _require_ingredient(self, ingredient_id: int) -> None:
        if not self.repo.get_ingredient(int(ingredient_id)):
            raise NotFoundError("Ingredient not found.")

    def record_movement(
        self,
        ingredient_id: int,
        movement_type: str,
        quantity: float,
        unit_price: Optional[float] = None,
        total_price: Optional[float] = None,
        supplier: Optional[str] = None,
        reference_no: Optional[str] = None,
        reason: Optional[str] = None,
        note: Optional[str] = None,
    ) -> StockMovement:
        delta = signed_effect(movement_type, quantity)
        self._require_ingredient(ingredient_id)
        movement = self.repo.record_movement(
            int(ingredient_id),
            movement_type,
            float(quantity),
            delta,
            unit_price=(to_number(unit_price, "Unit price") if unit_price is not None else None),
            total_price=_total(unit_price, total_price, quantity),
            supplier=supplier,
            reference_no=reference_no,
            reason=reason,
            note=note,
        )
        log.info(
            "movement_recorded id=%s ingredient_id=%s type=%s delta=%s previous=%s resulting=%s",
            movement.id, movement.ingredient_id, movement_type, delta, movement.previous_qty, movement.resulting_qty,
        )
        return movement

    def update_movement(self, movement_id: int, **changes) -> StockMovement:
        """Re-state a movement. The old effect is reversed and the new one applied atomically."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update movement fields: {', '.join(sorted(unknown))}")

        old = self.get_movement(movement_id)
        merged = {k: getattr(old, k) for k in EDITABLE_FIELDS}
        merged.update(changes)

        delta = signed_effect(merged["movement_type"], merged["quantity"])
        if int(merged["ingredient_id"]) != old.ingredient_id:
            self._require_ingredient(merged["ingredient_id"])

        # a stale total is recomputed when only price or quantity changed
        total_price = changes.get("total_price")
        if total_price is None and ("unit_price" in changes or "quantity" in changes):
            total_price = _total(merged["unit_price"], None, merged["quantity"])
        elif total_price is None:
            total_price = old.total_price

        movement = self.repo.update_movement(
            int(movement_id),
            int(merged["ingredient_id"]),
            merged["movement_type"],
            float(merged["quantity"]),
            delta,
            unit_price=merged["unit_price"],
            total_price=total_price,
            supplier=merged["supplier"],
            reference_no=merged["reference_no"],
            reason=merged["reason"],
            note=merged["note"],
        )
        log.info(
            "movement_updated id=%s old_ingredient_id=%s old_delta=%s ingredient_id=%s delta=%s",
            movement_id, old.ingredient_id, old.qty_delta, movement.ingredient_id, delta,
        )
        return movement

    def delete_movement(self, movement_id: int) -> StockMovement:
        removed = self.repo.delete_movement(int(movement_id))
        log.info(
            "movement_deleted id=%s ingredient_id=%s reversed_delta=%s",
            removed.id, removed.ingredient_id, -removed.qty_delta,
        )
        return removed

    def get_movement(self, movement_id: int) -> StockMovement:
        m = self.repo.get_movement(int(movement_id))
        if not m:
            raise NotFoundError("Stock movement not found.")
        return m

    def list_movements(
        self,
        ingredient_id: Optional[int] = None,
        start_iso: Optional[str] = None,
        end_iso: Optional[str] = None,
    ) -> list[StockMovement]:
        return self.repo.list_movements(ingredient_id, start_iso, end_iso)

    def record_movements_bulk(self, items: Iterable[dict], **common) -> BulkMovementResult:
        """
        items: [{ingredient_id, movement_type, quantity, ...}]

        Each row is its own transaction; ``common`` fills fields a row leaves out.
        """
        processed = 0
        failed: list[tuple[int, str]] = []
        for idx, it in enumerate(items):
            row = {**common, **it}
            try:
                self.record_movement(**row)
                processed += 1
            except (AppError, KeyError, TypeError) as e:
                log.warning("bulk_movement_failed index=%s error=%s", idx, e)
                failed.append((idx, str(e)))
        return BulkMovementResult(processed=processed, failed=failed)
