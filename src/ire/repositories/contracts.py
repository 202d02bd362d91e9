from __future__ import annotations

from typing import Iterable, Optional, Protocol

from ire.domain.models import Ingredient, Invoice, InvoiceItem, StockMovement


class IngredientRepository(Protocol):
    def get_ingredient(self, ingredient_id: int) -> Optional[Ingredient]: ...
    def list_ingredients(self, branch_id: str) -> list[Ingredient]: ...


class LedgerRepository(IngredientRepository, Protocol):
    def record_movement(self, ingredient_id: int, movement_type: str, quantity: float, qty_delta: float, **metadata) -> StockMovement: ...
    def update_movement(self, movement_id: int, ingredient_id: int, movement_type: str, quantity: float, qty_delta: float, **metadata) -> StockMovement: ...
    def delete_movement(self, movement_id: int) -> StockMovement: ...
    def get_movement(self, movement_id: int) -> Optional[StockMovement]: ...
    def list_movements(self, ingredient_id: Optional[int] = None, start_iso: Optional[str] = None, end_iso: Optional[str] = None) -> list[StockMovement]: ...


class InvoiceRepository(IngredientRepository, Protocol):
    def create_invoice_with_items(
        self,
        branch_id: str,
        supplier_name: Optional[str],
        invoice_no: Optional[str],
        invoice_date: Optional[str],
        image_url: Optional[str],
        total_amount: float,
        notes: Optional[str],
        items: Iterable[dict],
    ) -> int: ...
    def get_invoice(self, invoice_id: int) -> Optional[Invoice]: ...
    def get_invoice_item(self, item_id: int) -> Optional[InvoiceItem]: ...
    def invoice_items_for_invoice(self, invoice_id: int) -> list[InvoiceItem]: ...
    def list_invoices(self, branch_id: str, status: Optional[str] = None, date_from: Optional[str] = None, date_to: Optional[str] = None) -> list[Invoice]: ...
    def update_item_match(self, item_id: int, ingredient_id: Optional[int], match_status: str) -> bool: ...
    def update_item_confirmed_qty(self, item_id: int, confirmed_qty: float) -> bool: ...
    def update_invoice_notes(self, invoice_id: int, notes: Optional[str]) -> bool: ...
    def delete_invoice(self, invoice_id: int, deletable_statuses: Iterable[str]) -> bool: ...
    def transition_invoice(
        self,
        invoice_id: int,
        from_statuses: Iterable[str],
        to_status: str,
        confirmed_by: Optional[str] = None,
        item_overrides: Iterable[dict] = (),
    ) -> bool: ...
    def apply_invoice_item(
        self,
        invoice_id: int,
        item_id: int,
        ingredient_id: Optional[int],
        quantity: float,
        unit_price: float,
        supplier: Optional[str],
        reference_no: Optional[str],
        new_ingredient: Optional[dict] = None,
    ) -> tuple[int, int]: ...


class UsageRepository(Protocol):
    def get_usage_count(self, api_name: str, period_key: str) -> int: ...
    def increment_usage_atomic(self, api_name: str, period_key: str) -> int: ...
    def increment_usage_read_modify_write(self, api_name: str, period_key: str) -> int: ...
