import logging
import threading
from pathlib import Path

import pytest
from conftest import current_qty

from ire.domain.errors import InvalidTransitionError, NotFoundError, PersistenceError, ValidationError
from ire.domain.models import ExtractedItem, ExtractionResult
from ire.repositories.sqlite_repo import SqliteRepository
from ire.services.inventory_service import InventoryService
from ire.services.invoice_service import InvoiceService
from ire.services.movement_service import MovementService


class FixedExtraction:
    def __init__(self, result: ExtractionResult):
        self.result = result
        self.calls = 0

    def extract(self, document_bytes, mime_type, timeout=None):
        self.calls += 1
        return self.result


def _setup(tmp_path: Path, repo_cls=SqliteRepository, extraction=None):
    repo = repo_cls(tmp_path / "invoices.db")
    repo.init_db()
    inv = InventoryService(repo)
    return repo, inv, InvoiceService(repo, inv, extraction)


def _inspecting_invoice(invoices: InvoiceService, branch: str, items: list[dict], **header) -> int:
    invoice_id = invoices.create_invoice(branch, items, **header)
    invoices.start_inspection(invoice_id)
    return invoice_id


def test_intake_matches_items_and_totals_amount(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    flour = inv.add_ingredient("b1", "Flour", "kg")
    butter = inv.add_ingredient("b1", "Butter", "kg")
    inv.add_ingredient("b2", "Sugar", "kg")

    invoice_id = invoices.create_invoice(
        "b1",
        [
            {"name": "flour", "quantity": 20, "unit_price": 1.5, "total_price": 30},
            {"name": "Sugar", "quantity": 5, "unit_price": 2},
            {"name": "Unsalted", "quantity": 2, "unit_price": 4, "total_price": 8, "matched_ingredient_id": butter},
            {"name": "Vanilla", "quantity": 1, "unit_price": 12, "total_price": 12, "create_new": True},
        ],
        supplier_name="Mill Co",
        invoice_no="INV-7",
    )

    invoice = invoices.get_invoice(invoice_id)
    assert invoice.status == "received"
    assert invoice.total_amount == 60
    assert invoice.confirmed_amount == 0
    assert [(i.match_status, i.matched_ingredient_id) for i in invoice.items] == [
        ("auto_matched", flour),
        ("unmatched", None),
        ("manual_matched", butter),
        ("new_ingredient", None),
    ]
    assert [i.confirmed_qty for i in invoice.items] == [20, 5, 2, 1]
    assert current_qty(repo, flour) == 0


@pytest.mark.parametrize(
    "items",
    [
        [],
        [{"name": "  ", "quantity": 1}],
        [{"name": "Milk", "quantity": 0}],
        [{"name": "Milk", "quantity": 1, "unit_price": -1}],
        [{"name": "Milk", "quantity": 1, "total_price": -5}],
        [{"name": "Milk"}],
        [{"name": "Milk", "quantity": "two"}],
        [{"name": "Milk", "quantity": 1, "unit_price": "cheap"}],
        [{"name": "Milk", "quantity": 1, "box": [2]}],
        [{"name": "Milk", "quantity": 1, "matched_ingredient_id": "milk"}],
        ["Milk x1"],
    ],
)
def test_intake_rejects_invalid_items(tmp_path: Path, items):
    repo, _inv, invoices = _setup(tmp_path)
    with pytest.raises(ValidationError):
        invoices.create_invoice("b1", items)
    assert repo.list_invoices("b1") == []


def test_manual_match_to_other_branch_ingredient_is_rejected(tmp_path: Path):
    _repo, inv, invoices = _setup(tmp_path)
    other = inv.add_ingredient("b2", "Milk", "l")
    with pytest.raises(ValidationError):
        invoices.create_invoice("b1", [{"name": "Milk", "quantity": 1, "matched_ingredient_id": other}])


def test_confirm_creates_one_in_movement_per_resolved_item(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    flour = inv.add_ingredient("b1", "Flour", "kg", current_qty=2)
    invoice_id = _inspecting_invoice(
        invoices,
        "b1",
        [
            {"name": "Flour", "quantity": 10, "unit_price": 1.25, "total_price": 12.5},
            {"name": "Mystery box", "quantity": 3, "unit_price": 1},
        ],
        supplier_name="Mill Co",
        invoice_no="INV-1",
    )

    result = invoices.confirm_invoice(invoice_id, confirmed_by="kim")

    assert result.success
    assert [a.ingredient_id for a in result.applied] == [flour]
    assert [s.reason for s in result.skipped] == ["unmatched"]
    assert current_qty(repo, flour) == 12

    movement = repo.get_movement(result.applied[0].movement_id)
    assert movement.movement_type == "in"
    assert movement.quantity == 10
    assert movement.unit_price == 1.25
    assert movement.total_price == 12.5
    assert movement.supplier == "Mill Co"
    assert (movement.reference_type, movement.reference_id, movement.reference_no) == ("invoice", invoice_id, "INV-1")

    invoice = invoices.get_invoice(invoice_id)
    assert invoice.status == "confirmed"
    assert invoice.confirmed_by == "kim"
    assert invoice.confirmed_at is not None
    assert invoice.confirmed_amount == 12.5
    assert invoice.items[0].movement_id == movement.id


def test_confirm_requires_inspecting_status(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    flour = inv.add_ingredient("b1", "Flour", "kg")
    invoice_id = invoices.create_invoice("b1", [{"name": "Flour", "quantity": 5}])

    with pytest.raises(InvalidTransitionError):
        invoices.confirm_invoice(invoice_id)
    assert current_qty(repo, flour) == 0


def test_second_confirmation_fails_without_ledger_effect(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    flour = inv.add_ingredient("b1", "Flour", "kg")
    invoice_id = _inspecting_invoice(invoices, "b1", [{"name": "Flour", "quantity": 5}])

    invoices.confirm_invoice(invoice_id)
    with pytest.raises(InvalidTransitionError):
        invoices.confirm_invoice(invoice_id)

    assert current_qty(repo, flour) == 5
    assert len(repo.list_movements(ingredient_id=flour)) == 1


def test_concurrent_confirmations_apply_stock_once(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    flour = inv.add_ingredient("b1", "Flour", "kg")
    invoice_id = _inspecting_invoice(invoices, "b1", [{"name": "Flour", "quantity": 7}])

    outcomes = []
    barrier = threading.Barrier(2)

    def confirm():
        barrier.wait()
        try:
            invoices.confirm_invoice(invoice_id, confirmed_by=threading.current_thread().name)
            outcomes.append("ok")
        except InvalidTransitionError:
            outcomes.append("rejected")

    threads = [threading.Thread(target=confirm) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["ok", "rejected"]
    assert current_qty(repo, flour) == 7


def test_zero_confirmed_quantity_is_skipped(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    flour = inv.add_ingredient("b1", "Flour", "kg")
    invoice_id = _inspecting_invoice(invoices, "b1", [{"name": "Flour", "quantity": 5}])
    item_id = invoices.list_items(invoice_id)[0].id

    invoices.set_confirmed_qty(item_id, 0)
    result = invoices.confirm_invoice(invoice_id)

    assert result.applied == ()
    assert [s.reason for s in result.skipped] == ["zero_quantity"]
    assert current_qty(repo, flour) == 0


def test_overrides_are_applied_before_stock_changes(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    cream = inv.add_ingredient("b1", "Cream", "l")
    invoice_id = _inspecting_invoice(
        invoices, "b1", [{"name": "Heavy whip 35%", "quantity": 6, "unit_price": 3, "total_price": 18}]
    )
    item_id = invoices.list_items(invoice_id)[0].id

    result = invoices.confirm_invoice(
        invoice_id,
        items=[{"invoice_item_id": item_id, "confirmed_qty": 4, "matched_ingredient_id": cream}],
    )

    assert [a.quantity for a in result.applied] == [4]
    assert current_qty(repo, cream) == 4
    item = repo.get_invoice_item(item_id)
    assert item.match_status == "manual_matched"
    assert invoices.get_invoice(invoice_id).confirmed_amount == 12


def test_new_ingredient_is_created_at_confirmation(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    invoice_id = _inspecting_invoice(
        invoices, "b1", [{"name": "Saffron", "quantity": 2, "unit": "g", "create_new": True}]
    )
    assert inv.list_ingredients("b1") == []

    result = invoices.confirm_invoice(invoice_id)

    created = repo.get_ingredient_by_name("b1", "Saffron")
    assert created is not None
    assert created.unit == "g"
    assert created.current_qty == 2
    assert result.applied[0].ingredient_id == created.id
    assert repo.get_invoice_item(result.applied[0].invoice_item_id).matched_ingredient_id == created.id


class FailingItemRepo(SqliteRepository):
    fail_item_ids: set = set()

    def apply_invoice_item(self, invoice_id, item_id, **kwargs):
        if item_id in self.fail_item_ids:
            raise PersistenceError("Database write failed: database is locked")
        return super().apply_invoice_item(invoice_id, item_id, **kwargs)


def test_item_failure_is_reported_and_later_items_continue(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path, repo_cls=FailingItemRepo)
    flour = inv.add_ingredient("b1", "Flour", "kg")
    sugar = inv.add_ingredient("b1", "Sugar", "kg")
    invoice_id = _inspecting_invoice(
        invoices,
        "b1",
        [
            {"name": "Flour", "quantity": 5, "unit_price": 1},
            {"name": "Sugar", "quantity": 3, "unit_price": 2},
        ],
    )
    first_item = invoices.list_items(invoice_id)[0].id
    repo.fail_item_ids = {first_item}

    result = invoices.confirm_invoice(invoice_id)

    assert not result.success
    assert [f.invoice_item_id for f in result.failed] == [first_item]
    assert [a.ingredient_id for a in result.applied] == [sugar]
    assert current_qty(repo, flour) == 0
    assert current_qty(repo, sugar) == 3
    invoice = invoices.get_invoice(invoice_id)
    assert invoice.status == "confirmed"
    assert invoice.confirmed_amount == 6


def test_deleting_confirmed_invoice_fails_and_keeps_stock(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    flour = inv.add_ingredient("b1", "Flour", "kg")
    invoice_id = _inspecting_invoice(invoices, "b1", [{"name": "Flour", "quantity": 9}])
    invoices.confirm_invoice(invoice_id)

    with pytest.raises(InvalidTransitionError):
        invoices.delete_invoice(invoice_id)

    assert current_qty(repo, flour) == 9
    assert invoices.get_invoice(invoice_id).status == "confirmed"


def test_received_and_disputed_invoices_can_be_deleted(tmp_path: Path):
    repo, _inv, invoices = _setup(tmp_path)
    received = invoices.create_invoice("b1", [{"name": "Milk", "quantity": 1}])
    disputed = _inspecting_invoice(invoices, "b1", [{"name": "Eggs", "quantity": 30}])
    invoices.dispute_invoice(disputed, notes="short delivery")
    assert invoices.get_invoice(disputed).notes == "short delivery"

    invoices.delete_invoice(received)
    invoices.delete_invoice(disputed)

    assert repo.list_invoices("b1") == []
    with pytest.raises(NotFoundError):
        invoices.get_invoice(received)


def test_inspecting_invoice_cannot_be_deleted(tmp_path: Path):
    _repo, _inv, invoices = _setup(tmp_path)
    invoice_id = _inspecting_invoice(invoices, "b1", [{"name": "Milk", "quantity": 1}])
    with pytest.raises(InvalidTransitionError):
        invoices.delete_invoice(invoice_id)


def test_rematch_and_quantity_edits_are_closed_after_confirmation(tmp_path: Path):
    _repo, inv, invoices = _setup(tmp_path)
    milk = inv.add_ingredient("b1", "Milk", "l")
    invoice_id = _inspecting_invoice(invoices, "b1", [{"name": "Whole", "quantity": 2}])
    item_id = invoices.list_items(invoice_id)[0].id

    invoices.rematch_item(item_id, milk)
    assert invoices.list_items(invoice_id)[0].match_status == "manual_matched"
    invoices.rematch_item(item_id, None)
    assert invoices.list_items(invoice_id)[0].match_status == "unmatched"

    invoices.confirm_invoice(invoice_id)

    with pytest.raises(InvalidTransitionError):
        invoices.rematch_item(item_id, milk)
    with pytest.raises(InvalidTransitionError):
        invoices.set_confirmed_qty(item_id, 1)
    with pytest.raises(InvalidTransitionError):
        invoices.dispute_invoice(invoice_id)


def test_list_invoices_filters_by_status(tmp_path: Path):
    _repo, _inv, invoices = _setup(tmp_path)
    a = invoices.create_invoice("b1", [{"name": "Milk", "quantity": 1}], invoice_date="2026-03-01")
    b = _inspecting_invoice(invoices, "b1", [{"name": "Eggs", "quantity": 1}], invoice_date="2026-03-05")
    invoices.create_invoice("b2", [{"name": "Milk", "quantity": 1}])

    assert {i.id for i in invoices.list_invoices("b1")} == {a, b}
    assert [i.id for i in invoices.list_invoices("b1", status="inspecting")] == [b]
    assert [i.id for i in invoices.list_invoices("b1", date_from="2026-03-02", date_to="2026-03-31")] == [b]


def test_scan_invoice_registers_extracted_items(tmp_path: Path):
    extraction = FixedExtraction(
        ExtractionResult(
            items=(
                ExtractedItem(name="Flour 20kg", quantity=2, unit="bag", unit_price=18.0, total_price=36.0),
                ExtractedItem(name="Olive oil", quantity=1, unit_price=9.0),
            ),
            supplier="Mill Co",
            reference_no="TX-99",
            discarded=1,
        )
    )
    _repo, inv, invoices = _setup(tmp_path, extraction=extraction)
    flour = inv.add_ingredient("b1", "Flour", "kg")

    invoice_id = invoices.scan_invoice("b1", b"\xff\xd8fake", "image/jpeg", image_url="s3://bucket/inv.jpg")

    invoice = invoices.get_invoice(invoice_id)
    assert extraction.calls == 1
    assert invoice.supplier_name == "Mill Co"
    assert invoice.invoice_no == "TX-99"
    assert invoice.image_url == "s3://bucket/inv.jpg"
    assert invoice.total_amount == 45
    assert "1 unreadable" in invoice.notes
    assert [(i.match_status, i.matched_ingredient_id) for i in invoice.items] == [
        ("auto_matched", flour),
        ("unmatched", None),
    ]


def test_scan_with_no_readable_items_is_a_validation_error(tmp_path: Path):
    extraction = FixedExtraction(ExtractionResult(items=(), discarded=3))
    repo, _inv, invoices = _setup(tmp_path, extraction=extraction)

    with pytest.raises(ValidationError):
        invoices.scan_invoice("b1", b"png", "image/png")
    assert repo.list_invoices("b1") == []


def test_flour_scenario_ledger_and_invoice(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    ledger = MovementService(repo)
    flour = inv.add_ingredient("b1", "flour", "kg")

    ledger.record_movement(flour, "in", 50)
    ledger.record_movement(flour, "out", 20)
    invoice_id = _inspecting_invoice(invoices, "b1", [{"name": "flour", "quantity": 30}])
    invoices.confirm_invoice(invoice_id)

    assert current_qty(repo, flour) == 60


def test_disputed_invoice_cannot_be_confirmed(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    flour = inv.add_ingredient("b1", "Flour", "kg", current_qty=4)
    invoice_id = _inspecting_invoice(invoices, "b1", [{"name": "Flour", "quantity": 5}])
    invoices.dispute_invoice(invoice_id, notes="wrong supplier")

    with pytest.raises(InvalidTransitionError):
        invoices.confirm_invoice(invoice_id)

    assert current_qty(repo, flour) == 4
    assert repo.list_movements(ingredient_id=flour) == []
    assert invoices.get_invoice(invoice_id).status == "disputed"


class LateEditRepo(SqliteRepository):
    """Runs another operator's already status-checked edits right after a confirmation claim."""

    late_edits: list = []
    late_results: list = []

    def transition_invoice(self, invoice_id, from_statuses, to_status, confirmed_by=None, item_overrides=()):
        claimed = super().transition_invoice(invoice_id, from_statuses, to_status, confirmed_by, item_overrides)
        if claimed and to_status == "confirmed":
            for edit in self.late_edits:
                self.late_results.append(edit(self))
        return claimed


def test_item_edits_after_confirmation_claim_do_not_reach_ledger(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path, repo_cls=LateEditRepo)
    flour = inv.add_ingredient("b1", "Flour", "kg")
    sugar = inv.add_ingredient("b1", "Sugar", "kg")
    invoice_id = _inspecting_invoice(invoices, "b1", [{"name": "Flour", "quantity": 10}])
    item_id = invoices.list_items(invoice_id)[0].id

    repo.late_edits = [
        lambda r: r.update_item_confirmed_qty(item_id, 999),
        lambda r: r.update_item_match(item_id, sugar, "manual_matched"),
    ]
    repo.late_results = []
    result = invoices.confirm_invoice(invoice_id)

    assert repo.late_results == [False, False]
    assert [a.quantity for a in result.applied] == [10]
    assert current_qty(repo, flour) == 10
    assert current_qty(repo, sugar) == 0
    item = repo.get_invoice_item(item_id)
    assert (item.confirmed_qty, item.matched_ingredient_id) == (10, flour)


def test_confirmation_overrides_are_written_only_with_the_claim(tmp_path: Path):
    repo, inv, invoices = _setup(tmp_path)
    inv.add_ingredient("b1", "Flour", "kg")
    invoice_id = invoices.create_invoice("b1", [{"name": "Flour", "quantity": 5}])
    item_id = invoices.list_items(invoice_id)[0].id

    claimed = repo.transition_invoice(
        invoice_id, ("inspecting",), "confirmed", item_overrides=[{"item_id": item_id, "confirmed_qty": 1}]
    )

    assert claimed is False
    assert repo.get_invoice_item(item_id).confirmed_qty == 5
    assert invoices.get_invoice(invoice_id).status == "received"


@pytest.mark.parametrize("qty", [None, "lots", -1])
def test_confirmed_quantity_must_be_a_non_negative_number(tmp_path: Path, qty):
    _repo, inv, invoices = _setup(tmp_path)
    inv.add_ingredient("b1", "Flour", "kg")
    invoice_id = _inspecting_invoice(invoices, "b1", [{"name": "Flour", "quantity": 5}])
    item_id = invoices.list_items(invoice_id)[0].id

    with pytest.raises(ValidationError):
        invoices.set_confirmed_qty(item_id, qty)
    with pytest.raises(ValidationError):
        invoices.confirm_invoice(invoice_id, items=[{"invoice_item_id": item_id, "confirmed_qty": qty or "lots"}])
    assert invoices.list_items(invoice_id)[0].confirmed_qty == 5


@pytest.mark.parametrize("override", [{"confirmed_qty": 1}, {"invoice_item_id": "first", "confirmed_qty": 1}])
def test_override_needs_a_valid_item_id(tmp_path: Path, override):
    _repo, _inv, invoices = _setup(tmp_path)
    invoice_id = _inspecting_invoice(invoices, "b1", [{"name": "Flour", "quantity": 5}])

    with pytest.raises(ValidationError):
        invoices.confirm_invoice(invoice_id, items=[override])
    assert invoices.get_invoice(invoice_id).status == "inspecting"


def test_database_failure_is_logged_and_raised_as_persistence_error(tmp_path: Path, caplog):
    repo, _inv, invoices = _setup(tmp_path)
    invoice_id = invoices.create_invoice("b1", [{"name": "Flour", "quantity": 5}])
    item_id = invoices.list_items(invoice_id)[0].id
    caplog.set_level(logging.ERROR, logger="ire.repositories.sqlite_repo")

    with pytest.raises(PersistenceError):
        repo.update_item_match(item_id, 4242, "manual_matched")

    failures = [r for r in caplog.records if "persistence_failed" in r.getMessage()]
    assert len(failures) == 1
    assert failures[0].exc_info is not None
    assert repo.get_invoice_item(item_id).matched_ingredient_id is None
