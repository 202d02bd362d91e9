from __future__ import annotations

from typing import Optional

from ire.domain.errors import NotFoundError, ValidationError
from ire.domain.models import Ingredient
from ire.domain.validation import to_id, to_number


def _positive_or_none(value: Optional[float], label: str) -> Optional[float]:
    if value is None or value == "":
        return None
    v = to_number(value, label)
    if v <= 0:
        raise ValidationError(f"{label} must be > 0.")
    return v


def _reorder_point(value) -> Optional[float]:
    if value is None or value == "":
        return None
    return to_number(value, "Reorder point")


class InventoryService:
    """Ingredient catalog; also the catalog provider for matching."""

    def __init__(self, repo):
        self.repo = repo

    def list_ingredients(self, branch_id: str) -> list[Ingredient]:
        return self.repo.list_ingredients(branch_id)

    def low_stock(self, branch_id: str) -> list[Ingredient]:
        return self.repo.list_low_stock(branch_id)

    def get_ingredient(self, ingredient_id: int) -> Ingredient:
        ing = self.repo.get_ingredient(to_id(ingredient_id, "Ingredient id"))
        if not ing:
            raise NotFoundError("Ingredient not found.")
        return ing

    def add_ingredient(
        self,
        branch_id: str,
        name: str,
        unit: str = "ea",
        current_qty: float = 0.0,
        units_per_pack: Optional[float] = None,
        packs_per_box: Optional[float] = None,
        reorder_point: Optional[float] = None,
    ) -> int:
        branch_id = (branch_id or "").strip()
        name = (name or "").strip()
        unit = (unit or "").strip() or "ea"
        if not branch_id or not name:
            raise ValidationError("Branch and name are required.")
        current_qty = to_number(current_qty, "Initial quantity")
        reorder_point = _reorder_point(reorder_point)
        if self.repo.get_ingredient_by_name(branch_id, name):
            raise ValidationError(f"Ingredient '{name}' already exists in this branch.")
        return self.repo.add_ingredient(
            branch_id,
            name,
            unit,
            current_qty,
            _positive_or_none(units_per_pack, "Units per pack"),
            _positive_or_none(packs_per_box, "Packs per box"),
            reorder_point,
        )

    def update_packaging(
        self,
        ingredient_id: int,
        units_per_pack: Optional[float],
        packs_per_box: Optional[float],
        reorder_point: Optional[float] = None,
    ) -> None:
        updated = self.repo.update_ingredient_packaging(
            to_id(ingredient_id, "Ingredient id"),
            _positive_or_none(units_per_pack, "Units per pack"),
            _positive_or_none(packs_per_box, "Packs per box"),
            _reorder_point(reorder_point),
        )
        if not updated:
            raise NotFoundError("Ingredient not found.")
