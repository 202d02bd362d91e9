from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ire.config import ExtractionSettings, load_extraction_settings
from ire.repositories.sqlite_repo import SqliteRepository
from ire.services.closing_service import ClosingService
from ire.services.excel_service import ExcelService
from ire.services.extraction_service import ExtractionClient
from ire.services.inventory_service import InventoryService
from ire.services.invoice_service import InvoiceService
from ire.services.movement_service import MovementService
from ire.services.quota_service import QuotaGateway


@dataclass(frozen=True)
class AppContainer:
    repo: SqliteRepository
    quota: QuotaGateway
    extraction: ExtractionClient
    inventory: InventoryService
    ledger: MovementService
    invoices: InvoiceService
    closings: ClosingService
    excel: ExcelService


def build_container(db_path: Path | str, settings: Optional[ExtractionSettings] = None) -> AppContainer:
    repo = SqliteRepository(db_path)
    repo.init_db()

    settings = settings or load_extraction_settings()
    quota = QuotaGateway(repo)
    extraction = ExtractionClient(quota, settings)
    inventory = InventoryService(repo)
    ledger = MovementService(repo)
    invoices = InvoiceService(repo, inventory, extraction)
    closings = ClosingService(repo, inventory)
    excel = ExcelService(inventory, closings)

    return AppContainer(
        repo=repo,
        quota=quota,
        extraction=extraction,
        inventory=inventory,
        ledger=ledger,
        invoices=invoices,
        closings=closings,
        excel=excel,
    )
