from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol


class UnitOfWork(Protocol):
    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...
    def create_invoice(
        self,
        branch_id: str,
        supplier_name: Optional[str],
        invoice_no: Optional[str],
        invoice_date: Optional[str],
        image_url: Optional[str],
        notes: Optional[str],
        items: Iterable[dict],
    ) -> int: ...
    def apply_invoice_item(self, invoice_id: int, item_id: int, **kwargs) -> tuple[int, int]: ...


@dataclass
class RepositoryUnitOfWork:
    """Unit of Work adapter for transactional write use-cases.

    Each repository write method already runs in its own BEGIN IMMEDIATE
    transaction. This class keeps the invoice service free of persistence
    details and gives tests one seam to inject failures per item.
    """

    repo: object

    def __enter__(self) -> "RepositoryUnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def create_invoice(
        self,
        branch_id: str,
        supplier_name: Optional[str],
        invoice_no: Optional[str],
        invoice_date: Optional[str],
        image_url: Optional[str],
        notes: Optional[str],
        items: Iterable[dict],
    ) -> int:
        items = list(items)
        total_amount = sum(float(it.get("total_price") or 0) for it in items)
        return int(
            self.repo.create_invoice_with_items(
                branch_id=branch_id,
                supplier_name=supplier_name,
                invoice_no=invoice_no,
                invoice_date=invoice_date,
                image_url=image_url,
                total_amount=total_amount,
                notes=notes,
                items=items,
            )
        )

    def apply_invoice_item(self, invoice_id: int, item_id: int, **kwargs) -> tuple[int, int]:
        return self.repo.apply_invoice_item(invoice_id, item_id, **kwargs)
