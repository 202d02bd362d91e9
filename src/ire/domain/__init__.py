from .models import (
    Ingredient,
    StockMovement,
    Invoice,
    InvoiceItem,
    DailyClosing,
    ClosingItem,
    ExtractedItem,
    ExtractionResult,
    ConfirmInvoiceResult,
)
from .errors import (
    AppError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    PersistenceError,
    QuotaExceededError,
    UpstreamExtractionError,
)

__all__ = [
    "Ingredient",
    "StockMovement",
    "Invoice",
    "InvoiceItem",
    "DailyClosing",
    "ClosingItem",
    "ExtractedItem",
    "ExtractionResult",
    "ConfirmInvoiceResult",
    "AppError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "PersistenceError",
    "QuotaExceededError",
    "UpstreamExtractionError",
]
