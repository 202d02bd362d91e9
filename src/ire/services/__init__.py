from .quota_service import QuotaGateway
from .extraction_service import ExtractionClient
from .matching_service import match_ingredient
from .inventory_service import InventoryService
from .movement_service import MovementService
from .invoice_service import InvoiceService
from .closing_service import ClosingService
from .excel_service import ExcelService

__all__ = [
    "QuotaGateway",
    "ExtractionClient",
    "match_ingredient",
    "InventoryService",
    "MovementService",
    "InvoiceService",
    "ClosingService",
    "ExcelService",
]
