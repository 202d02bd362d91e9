from __future__ import annotations

import logging
from typing import Optional

from openpyxl import Workbook, load_workbook

from ire.domain.errors import AppError, ValidationError
from ire.domain.validation import to_number
from ire.services.matching_service import match_ingredient

log = logging.getLogger("ire.closing")
catalog_log = logging.getLogger("ire.ledger")

COUNT_COLUMNS = ("boxes", "packs", "units", "waste")
TEMPLATE_HEADERS = ["name", "unit", "boxes", "packs", "units", "waste", "note"]
INGREDIENT_COLUMNS = ("unit", "current_qty", "reorder_point", "units_per_pack", "packs_per_box")


def _headers(ws) -> dict[str, int]:
    headers = {}
    for col in range(1, ws.max_column + 1):
        v = ws.cell(row=1, column=col).value
        if isinstance(v, str):
            headers[v.strip().lower()] = col
    return headers


class ExcelService:
    def __init__(self, inventory_service, closing_service):
        self.inventory = inventory_service
        self.closings = closing_service

    def import_closing_sheet(
        self,
        path: str,
        branch_id: str,
        closing_date: str,
        note: Optional[str] = None,
    ) -> tuple[int, list[str]]:
        """
        Sheet holds physical counts, not deltas.
        Headers:
          name | boxes | packs | units | waste | note   (all but name optional)

        Names are resolved with the ingredient matcher; rows resolving to the
        same ingredient are summed. Returns (closing_id, unmatched names).
        """
        wb = load_workbook(path, data_only=True)
        ws = wb.active

        headers = _headers(ws)
        if "name" not in headers:
            raise ValidationError("Missing column header: name")

        catalog = self.inventory.list_ingredients(branch_id)
        totals: dict[int, dict] = {}
        unmatched: list[str] = []

        for row in range(2, ws.max_row + 1):
            name = ws.cell(row=row, column=headers["name"]).value
            if name is None or not str(name).strip():
                continue
            name = str(name).strip()

            try:
                counts = {
                    c: (to_number(ws.cell(row=row, column=headers[c]).value, c) if c in headers else 0.0)
                    for c in COUNT_COLUMNS
                }
            except ValidationError as e:
                raise ValidationError(f"Row {row} ('{name}'): {e}")

            ing = match_ingredient(name, catalog)
            if not ing:
                log.warning("closing_sheet_unmatched row=%s name=%s", row, name)
                unmatched.append(name)
                continue

            acc = totals.setdefault(ing.id, {"boxes": 0.0, "packs": 0.0, "units": 0.0, "waste": 0.0, "note": None})
            for c in COUNT_COLUMNS:
                acc[c] += counts[c]
            if "note" in headers:
                row_note = ws.cell(row=row, column=headers["note"]).value
                if row_note:
                    acc["note"] = str(row_note)

        if not totals:
            raise ValidationError("No rows in the sheet matched an ingredient.")

        items = [
            {
                "ingredient_id": ingredient_id,
                "boxes": acc["boxes"],
                "packs": acc["packs"],
                "units": acc["units"],
                "waste_qty": acc["waste"],
                "note": acc["note"],
            }
            for ingredient_id, acc in totals.items()
        ]
        closing_id = self.closings.save_draft(branch_id, closing_date, items, note=note)
        log.info("closing_sheet_imported closing_id=%s matched=%s unmatched=%s", closing_id, len(items), len(unmatched))
        return closing_id, unmatched

    def import_ingredients(self, path: str, branch_id: str) -> tuple[int, int]:
        """
        Bulk-load the branch catalog.
        Headers:
          name | unit | current_qty | reorder_point | units_per_pack | packs_per_box
          (all but name optional)

        Rows whose name already exists in the branch, blank rows and rows with
        bad values are skipped. Returns (inserted, skipped).
        """
        wb = load_workbook(path, data_only=True)
        ws = wb.active

        headers = _headers(ws)
        if "name" not in headers:
            raise ValidationError("Missing column header: name")

        inserted = 0
        skipped = 0
        for row in range(2, ws.max_row + 1):
            name = ws.cell(row=row, column=headers["name"]).value
            if name is None or not str(name).strip():
                continue

            values = {c: ws.cell(row=row, column=headers[c]).value for c in INGREDIENT_COLUMNS if c in headers}
            unit = values.pop("unit", None)
            try:
                self.inventory.add_ingredient(
                    branch_id,
                    str(name).strip(),
                    str(unit).strip() if unit is not None else "ea",
                    current_qty=to_number(values.get("current_qty"), "current_qty"),
                    units_per_pack=values.get("units_per_pack"),
                    packs_per_box=values.get("packs_per_box"),
                    reorder_point=values.get("reorder_point"),
                )
            except AppError as e:
                catalog_log.warning("ingredient_import_skipped row=%s name=%s error=%s", row, name, e)
                skipped += 1
                continue
            inserted += 1

        catalog_log.info("ingredients_imported branch=%s inserted=%s skipped=%s", branch_id, inserted, skipped)
        return inserted, skipped

    def export_closing_template(self, path: str, branch_id: str) -> int:
        wb = Workbook()
        ws = wb.active
        ws.title = "Closing"
        ws.append(TEMPLATE_HEADERS)

        rows = 0
        for ing in self.inventory.list_ingredients(branch_id):
            ws.append([ing.name, ing.unit, None, None, None, None, None])
            rows += 1

        wb.save(path)
        return rows
