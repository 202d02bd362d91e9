from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from ire.domain.errors import AppError, InvalidTransitionError, NotFoundError, ValidationError
from ire.domain.models import (
    AppliedItem,
    ConfirmInvoiceResult,
    Invoice,
    InvoiceItem,
    ItemOutcome,
)
from ire.domain.validation import to_id, to_number
from ire.repositories.contracts import InvoiceRepository
from ire.repositories.unit_of_work import RepositoryUnitOfWork, UnitOfWork
from ire.services.matching_service import match_ingredient

log = logging.getLogger("ire.invoices")

EDITABLE_STATUSES = ("received", "inspecting")
DELETABLE_STATUSES = ("received", "disputed")
DISPUTABLE_STATUSES = ("received", "inspecting")


def _confirmed_qty(value) -> float:
    if value is None:
        raise ValidationError("Confirmed quantity is required.")
    return to_number(value, "Confirmed quantity")


class InvoiceService:
    def __init__(
        self,
        repo: InvoiceRepository,
        inventory_service,
        extraction_client=None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
    ):
        self.repo = repo
        self.inventory = inventory_service
        self.extraction = extraction_client
        self.uow_factory = uow_factory or (lambda: RepositoryUnitOfWork(repo))

    # ---------- Queries ----------
    def get_invoice(self, invoice_id: int) -> Invoice:
        inv = self.repo.get_invoice(int(invoice_id))
        if not inv:
            raise NotFoundError("Invoice not found.")
        return inv

    def list_invoices(
        self,
        branch_id: str,
        status: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> list[Invoice]:
        return self.repo.list_invoices(branch_id, status, date_from, date_to)

    def list_items(self, invoice_id: int) -> list[InvoiceItem]:
        return list(self.get_invoice(invoice_id).items)

    def _get_item(self, item_id: int) -> tuple[InvoiceItem, Invoice]:
        item = self.repo.get_invoice_item(int(item_id))
        if not item:
            raise NotFoundError("Invoice item not found.")
        return item, self.get_invoice(item.invoice_id)

    def _require_status(self, inv: Invoice, allowed: Iterable[str], action: str) -> None:
        if inv.status not in allowed:
            raise InvalidTransitionError(f"Cannot {action} an invoice in status '{inv.status}'.")

    def _require_branch_ingredient(self, ingredient_id, branch_id: str) -> int:
        ing = self.inventory.get_ingredient(to_id(ingredient_id, "Ingredient id"))
        if ing.branch_id != branch_id:
            raise ValidationError("Ingredient belongs to a different branch.")
        return ing.id

    # ---------- Intake ----------
    def create_invoice(
        self,
        branch_id: str,
        items: Iterable[dict],
        supplier_name: Optional[str] = None,
        invoice_no: Optional[str] = None,
        invoice_date: Optional[str] = None,
        image_url: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> int:
        """
        items: [{name, quantity, unit?, unit_price?, total_price?, box?, ea?,
                 matched_ingredient_id?, create_new?}]

        Each line is matched against the branch catalog before anything is
        written; header and lines land in one transaction.
        """
        branch_id = (branch_id or "").strip()
        if not branch_id:
            raise ValidationError("Branch is required.")
        items = list(items)
        if not items:
            raise ValidationError("Invoice has no items.")

        catalog = self.inventory.list_ingredients(branch_id)
        rows: list[dict] = []
        for it in items:
            if not isinstance(it, dict):
                raise ValidationError("Invoice items must be objects.")
            name = str(it.get("name") or it.get("item_name") or "").strip()
            if not name:
                raise ValidationError("Item name is required.")
            qty = to_number(it.get("quantity"), f"Quantity for '{name}'")
            if qty <= 0:
                raise ValidationError(f"Quantity for '{name}' must be > 0.")
            unit_price = to_number(it.get("unit_price"), "Unit price")
            total_price = it.get("total_price")
            total_price = to_number(total_price, "Total price") if total_price is not None else unit_price * qty

            matched_id = it.get("matched_ingredient_id")
            if matched_id is not None:
                matched_id = self._require_branch_ingredient(matched_id, branch_id)
                status = "manual_matched"
            elif it.get("create_new"):
                status = "new_ingredient"
            else:
                hit = match_ingredient(name, catalog)
                matched_id = hit.id if hit else None
                status = "auto_matched" if hit else "unmatched"

            rows.append(
                {
                    "item_name": name,
                    "quantity": qty,
                    "unit": it.get("unit"),
                    "unit_price": unit_price,
                    "total_price": total_price,
                    "box_qty": to_number(it.get("box", it.get("box_qty")), "Box quantity"),
                    "ea_qty": to_number(it.get("ea", it.get("ea_qty")), "EA quantity"),
                    "match_status": status,
                    "matched_ingredient_id": matched_id,
                }
            )

        with self.uow_factory() as uow:
            invoice_id = uow.create_invoice(branch_id, supplier_name, invoice_no, invoice_date, image_url, notes, rows)

        matched = sum(1 for r in rows if r["match_status"] != "unmatched")
        log.info("invoice_received id=%s branch=%s items=%s matched=%s", invoice_id, branch_id, len(rows), matched)
        return invoice_id

    def scan_invoice(
        self,
        branch_id: str,
        document_bytes: bytes,
        mime_type: str,
        image_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """Extract line items from a document image and register them as a received invoice."""
        if self.extraction is None:
            raise ValidationError("Document extraction is not configured.")
        result = self.extraction.extract(document_bytes, mime_type, timeout=timeout)
        if not result.items:
            raise ValidationError("No readable items were found in the document.")

        notes = f"{result.discarded} unreadable rows discarded during extraction." if result.discarded else None
        items = [
            {
                "name": x.name,
                "quantity": x.quantity,
                "unit": x.unit,
                "unit_price": x.unit_price,
                "total_price": x.total_price,
                "box": x.box,
                "ea": x.ea,
            }
            for x in result.items
        ]
        return self.create_invoice(
            branch_id,
            items,
            supplier_name=result.supplier,
            invoice_no=result.reference_no,
            image_url=image_url,
            notes=notes,
        )

    # ---------- Inspection ----------
    def start_inspection(self, invoice_id: int) -> None:
        inv = self.get_invoice(invoice_id)
        self._require_status(inv, ("received",), "start inspection of")
        if not self.repo.transition_invoice(inv.id, ("received",), "inspecting"):
            raise InvalidTransitionError("Invoice status changed concurrently.")
        log.info("invoice_inspecting id=%s", inv.id)

    def rematch_item(self, item_id: int, ingredient_id: Optional[int]) -> None:
        item, inv = self._get_item(item_id)
        self._require_status(inv, EDITABLE_STATUSES, "rematch items of")
        if ingredient_id is None:
            updated = self.repo.update_item_match(item.id, None, "unmatched")
        else:
            ingredient_id = self._require_branch_ingredient(ingredient_id, inv.branch_id)
            updated = self.repo.update_item_match(item.id, ingredient_id, "manual_matched")
        # the status read above may be stale; the repository re-checks it atomically
        if not updated:
            raise InvalidTransitionError("Invoice is no longer open for edits.")
        log.info("invoice_item_rematched item_id=%s ingredient_id=%s", item.id, ingredient_id)

    def set_confirmed_qty(self, item_id: int, confirmed_qty: float) -> None:
        qty = _confirmed_qty(confirmed_qty)
        item, inv = self._get_item(item_id)
        self._require_status(inv, EDITABLE_STATUSES, "edit quantities of")
        if not self.repo.update_item_confirmed_qty(item.id, qty):
            raise InvalidTransitionError("Invoice is no longer open for edits.")

    def update_notes(self, invoice_id: int, notes: Optional[str]) -> None:
        if not self.repo.update_invoice_notes(int(invoice_id), notes):
            raise NotFoundError("Invoice not found.")

    # ---------- Terminal transitions ----------
    def _normalize_overrides(self, inv: Invoice, overrides: Iterable[dict]) -> list[dict]:
        item_ids = {it.id for it in inv.items}
        out: list[dict] = []
        for ov in overrides:
            item_id = to_id(ov.get("invoice_item_id"), "Invoice item id")
            if item_id not in item_ids:
                raise ValidationError(f"Item {item_id} does not belong to invoice {inv.id}.")
            row = {"item_id": item_id, "confirmed_qty": None, "matched_ingredient_id": None}
            if ov.get("confirmed_qty") is not None:
                row["confirmed_qty"] = _confirmed_qty(ov["confirmed_qty"])
            if ov.get("matched_ingredient_id") is not None:
                row["matched_ingredient_id"] = self._require_branch_ingredient(ov["matched_ingredient_id"], inv.branch_id)
            out.append(row)
        return out

    def confirm_invoice(
        self,
        invoice_id: int,
        confirmed_by: Optional[str] = None,
        items: Optional[Iterable[dict]] = None,
    ) -> ConfirmInvoiceResult:
        """
        items: optional overrides [{invoice_item_id, confirmed_qty?, matched_ingredient_id?}]

        The status transition is claimed first, together with the overrides in
        one transaction, so a second confirmation can never reach the ledger and
        no line edit can land after the claim. Each line is then applied in its
        own transaction; a failing line is reported and the rest continue.

        confirmed_at and confirmed_by are stamped by the claim, not with the
        movements: lines are not atomic with each other, so a confirmed invoice
        may carry failed lines and a confirmed_amount below its total.
        """
        inv = self.get_invoice(invoice_id)
        self._require_status(inv, ("inspecting",), "confirm")
        overrides = self._normalize_overrides(inv, items or ())

        claimed = self.repo.transition_invoice(
            inv.id, ("inspecting",), "confirmed", confirmed_by=confirmed_by, item_overrides=overrides
        )
        if not claimed:
            raise InvalidTransitionError("Invoice is no longer awaiting confirmation.")

        applied: list[AppliedItem] = []
        skipped: list[ItemOutcome] = []
        failed: list[ItemOutcome] = []

        for item in self.repo.invoice_items_for_invoice(inv.id):
            if item.movement_id is not None:
                skipped.append(ItemOutcome(item.id, "already_applied"))
                continue
            if item.confirmed_qty <= 0:
                skipped.append(ItemOutcome(item.id, "zero_quantity"))
                continue

            new_ingredient = None
            if item.match_status == "new_ingredient" and item.matched_ingredient_id is None:
                new_ingredient = {"branch_id": inv.branch_id, "name": item.item_name, "unit": item.unit or "ea"}
            elif item.match_status == "unmatched" or item.matched_ingredient_id is None:
                skipped.append(ItemOutcome(item.id, "unmatched"))
                continue

            try:
                with self.uow_factory() as uow:
                    movement_id, ingredient_id = uow.apply_invoice_item(
                        inv.id,
                        item.id,
                        ingredient_id=item.matched_ingredient_id,
                        quantity=item.confirmed_qty,
                        unit_price=item.unit_price,
                        supplier=inv.supplier_name,
                        reference_no=inv.invoice_no,
                        new_ingredient=new_ingredient,
                    )
            except AppError as e:
                log.error("invoice_item_failed invoice_id=%s item_id=%s error=%s", inv.id, item.id, e)
                failed.append(ItemOutcome(item.id, str(e)))
                continue
            applied.append(AppliedItem(item.id, ingredient_id, movement_id, item.confirmed_qty))

        log.info(
            "invoice_confirmed id=%s by=%s applied=%s skipped=%s failed=%s",
            inv.id, confirmed_by, len(applied), len(skipped), len(failed),
        )
        return ConfirmInvoiceResult(
            invoice_id=inv.id,
            applied=tuple(applied),
            skipped=tuple(skipped),
            failed=tuple(failed),
        )

    def dispute_invoice(self, invoice_id: int, notes: Optional[str] = None) -> None:
        inv = self.get_invoice(invoice_id)
        self._require_status(inv, DISPUTABLE_STATUSES, "dispute")
        if not self.repo.transition_invoice(inv.id, DISPUTABLE_STATUSES, "disputed"):
            raise InvalidTransitionError("Invoice status changed concurrently.")
        if notes is not None:
            self.repo.update_invoice_notes(inv.id, notes)
        log.info("invoice_disputed id=%s", inv.id)

    def delete_invoice(self, invoice_id: int) -> None:
        inv = self.get_invoice(invoice_id)
        self._require_status(inv, DELETABLE_STATUSES, "delete")
        if not self.repo.delete_invoice(inv.id, DELETABLE_STATUSES):
            raise InvalidTransitionError("Invoice status changed concurrently.")
        log.info("invoice_deleted id=%s status=%s", inv.id, inv.status)
