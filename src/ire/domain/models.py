from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional


MOVEMENT_TYPES = ("in", "out", "waste", "adjustment")
INVOICE_STATUSES = ("received", "inspecting", "confirmed", "disputed")
MATCH_STATUSES = ("auto_matched", "manual_matched", "unmatched", "new_ingredient")
CLOSING_STATUSES = ("draft", "completed")


@dataclass(frozen=True)
class Ingredient:
    id: int
    branch_id: str
    name: str
    unit: str
    current_qty: float
    units_per_pack: Optional[float] = None
    packs_per_box: Optional[float] = None
    reorder_point: Optional[float] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class StockMovement:
    id: int
    ingredient_id: int
    movement_type: str
    quantity: float
    qty_delta: float
    previous_qty: float
    resulting_qty: float
    unit_price: Optional[float]
    total_price: Optional[float]
    supplier: Optional[str]
    reference_type: str
    reference_id: Optional[int]
    reference_no: Optional[str]
    reason: Optional[str]
    note: Optional[str]
    created_at: str
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class InvoiceItem:
    id: int
    invoice_id: int
    item_name: str
    quantity: float
    unit: Optional[str]
    unit_price: float
    total_price: float
    box_qty: float
    ea_qty: float
    match_status: str
    matched_ingredient_id: Optional[int]
    confirmed_qty: float
    movement_id: Optional[int] = None


@dataclass(frozen=True)
class Invoice:
    id: int
    branch_id: str
    supplier_name: Optional[str]
    invoice_no: Optional[str]
    invoice_date: Optional[str]
    image_url: Optional[str]
    status: str
    total_amount: float
    confirmed_amount: float
    received_at: str
    confirmed_at: Optional[str]
    confirmed_by: Optional[str]
    notes: Optional[str]
    items: tuple[InvoiceItem, ...] = ()


@dataclass(frozen=True)
class ClosingItem:
    id: int
    closing_id: int
    ingredient_id: int
    opening_qty: float
    closing_boxes: float
    closing_packs: float
    closing_units: float
    closing_qty: float
    waste_qty: float
    note: Optional[str]


@dataclass(frozen=True)
class DailyClosing:
    id: int
    branch_id: str
    closing_date: str
    status: str
    closed_by: Optional[str]
    closed_at: Optional[str]
    note: Optional[str]
    items: tuple[ClosingItem, ...] = ()


@dataclass(frozen=True)
class UsageCheck:
    allowed: bool
    current_count: int
    limit: int
    remaining: int


@dataclass(frozen=True)
class UsageIncrement:
    success: bool
    new_count: int
    error: Optional[str] = None


@dataclass(frozen=True)
class ExtractedItem:
    name: str
    quantity: float
    unit: Optional[str] = None
    box: Optional[float] = None
    ea: Optional[float] = None
    unit_price: Optional[float] = None
    total_price: Optional[float] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class UsageSnapshot:
    daily_current: int
    daily_limit: int
    monthly_current: int
    monthly_limit: int


@dataclass(frozen=True)
class ExtractionResult:
    items: tuple[ExtractedItem, ...]
    supplier: Optional[str] = None
    reference_no: Optional[str] = None
    usage: Optional[UsageSnapshot] = None
    discarded: int = 0


@dataclass(frozen=True)
class AppliedItem:
    invoice_item_id: int
    ingredient_id: int
    movement_id: int
    quantity: float


@dataclass(frozen=True)
class ItemOutcome:
    invoice_item_id: int
    reason: str


@dataclass(frozen=True)
class ConfirmInvoiceResult:
    invoice_id: int
    applied: tuple[AppliedItem, ...] = ()
    skipped: tuple[ItemOutcome, ...] = ()
    failed: tuple[ItemOutcome, ...] = ()

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class BulkMovementResult:
    processed: int
    failed: list[tuple[int, str]] = field(default_factory=list)
