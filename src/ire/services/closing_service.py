from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from ire.domain.errors import NotFoundError, ValidationError
from ire.domain.models import DailyClosing
from ire.domain.validation import to_id, to_number

log = logging.getLogger("ire.closing")


def closing_quantity(
    boxes: float,
    packs: float,
    units: float,
    packs_per_box: Optional[float] = None,
    units_per_pack: Optional[float] = None,
) -> float:
    """boxes x packs_per_box x units_per_pack + packs x units_per_pack + units.

    Missing packaging factors count as 1 (flat units).
    """
    ppb = packs_per_box or 1
    upp = units_per_pack or 1
    return boxes * ppb * upp + packs * upp + units


class ClosingService:
    """End-of-day physical count. Completing a closing overwrites current_qty."""

    def __init__(self, repo, inventory_service):
        self.repo = repo
        self.inventory = inventory_service

    def save_draft(
        self,
        branch_id: str,
        closing_date: str,
        items: Iterable[dict],
        note: Optional[str] = None,
    ) -> int:
        """
        items: [{ingredient_id, boxes?, packs?, units?, waste_qty?, note?}]

        Replaces the draft's items wholesale. opening_qty is the ingredient's
        quantity at save time.
        """
        try:
            datetime.strptime(closing_date, "%Y-%m-%d")
        except (TypeError, ValueError):
            raise ValidationError("Closing date must be YYYY-MM-DD.")

        items = list(items)
        if not items:
            raise ValidationError("Closing has no items.")

        rows: list[dict] = []
        seen: set[int] = set()
        for it in items:
            if not isinstance(it, dict):
                raise ValidationError("Closing items must be objects.")
            ingredient_id = to_id(it.get("ingredient_id"), "Ingredient id")
            if ingredient_id in seen:
                raise ValidationError(f"Ingredient {ingredient_id} is listed twice.")
            seen.add(ingredient_id)

            ing = self.inventory.get_ingredient(ingredient_id)
            if ing.branch_id != branch_id:
                raise ValidationError(f"Ingredient {ingredient_id} belongs to a different branch.")

            boxes = to_number(it.get("boxes"), "Boxes")
            packs = to_number(it.get("packs"), "Packs")
            units = to_number(it.get("units"), "Units")
            rows.append(
                {
                    "ingredient_id": ingredient_id,
                    "boxes": boxes,
                    "packs": packs,
                    "units": units,
                    "closing_qty": closing_quantity(boxes, packs, units, ing.packs_per_box, ing.units_per_pack),
                    "waste_qty": to_number(it.get("waste_qty"), "Waste"),
                    "note": it.get("note"),
                }
            )

        closing_id = self.repo.save_closing_draft(branch_id, closing_date, rows, note=note)
        log.info("closing_draft_saved id=%s branch=%s date=%s items=%s", closing_id, branch_id, closing_date, len(rows))
        return closing_id

    def complete(self, closing_id: int, closed_by: Optional[str] = None) -> DailyClosing:
        changes = self.repo.complete_closing(int(closing_id), closed_by)
        for ingredient_id, previous, counted in changes:
            log.info(
                "closing_overwrite closing_id=%s ingredient_id=%s previous=%s counted=%s drift=%s",
                closing_id, ingredient_id, previous, counted, counted - previous,
            )
        log.info("closing_completed id=%s by=%s items=%s", closing_id, closed_by, len(changes))
        return self.get_closing_by_id(closing_id)

    def get_closing(self, branch_id: str, closing_date: str) -> Optional[DailyClosing]:
        return self.repo.get_closing_by_date(branch_id, closing_date)

    def get_closing_by_id(self, closing_id: int) -> DailyClosing:
        c = self.repo.get_closing(int(closing_id))
        if not c:
            raise NotFoundError("Closing not found.")
        return c

    def closing_history(self, branch_id: str, limit: int = 30) -> list[DailyClosing]:
        return self.repo.list_closings(branch_id, limit)
