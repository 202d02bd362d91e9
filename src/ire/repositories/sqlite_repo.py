from __future__ import annotations

import logging
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

from ire.domain.errors import (
    AtomicIncrementUnavailable,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
)
from ire.domain.models import (
    ClosingItem,
    DailyClosing,
    Ingredient,
    Invoice,
    InvoiceItem,
    StockMovement,
)

INGREDIENT_COLUMNS = "id, branch_id, name, unit, current_qty, units_per_pack, packs_per_box, reorder_point, updated_at"
MOVEMENT_COLUMNS = (
    "id, ingredient_id, movement_type, quantity, qty_delta, previous_qty, resulting_qty, unit_price, total_price, "
    "supplier, reference_type, reference_id, reference_no, reason, note, created_at, updated_at"
)
INVOICE_COLUMNS = (
    "id, branch_id, supplier_name, invoice_no, invoice_date, image_url, status, total_amount, confirmed_amount, "
    "received_at, confirmed_at, confirmed_by, notes"
)
INVOICE_ITEM_COLUMNS = (
    "id, invoice_id, item_name, quantity, unit, unit_price, total_price, box_qty, ea_qty, match_status, "
    "matched_ingredient_id, confirmed_qty, movement_id"
)
CLOSING_COLUMNS = "id, branch_id, closing_date, status, closed_by, closed_at, note"
CLOSING_ITEM_COLUMNS = (
    "id, closing_id, ingredient_id, opening_qty, closing_boxes, closing_packs, closing_units, closing_qty, "
    "waste_qty, note"
)

# INSERT ... ON CONFLICT DO UPDATE landed in sqlite 3.24
UPSERT_MIN_VERSION = (3, 24, 0)

# item edits only land while the parent invoice is still open
_OPEN_INVOICE_ITEM = "invoice_id IN (SELECT id FROM invoices WHERE status IN ('received', 'inspecting'))"

log = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now().replace(microsecond=0).isoformat(sep=" ")


def _opt_float(v) -> Optional[float]:
    return float(v) if v is not None else None


def _ingredient(r) -> Ingredient:
    return Ingredient(
        id=int(r[0]),
        branch_id=str(r[1]),
        name=str(r[2]),
        unit=str(r[3]),
        current_qty=float(r[4]),
        units_per_pack=_opt_float(r[5]),
        packs_per_box=_opt_float(r[6]),
        reorder_point=_opt_float(r[7]),
        updated_at=r[8],
    )


def _movement(r) -> StockMovement:
    return StockMovement(
        id=int(r[0]),
        ingredient_id=int(r[1]),
        movement_type=str(r[2]),
        quantity=float(r[3]),
        qty_delta=float(r[4]),
        previous_qty=float(r[5]),
        resulting_qty=float(r[6]),
        unit_price=_opt_float(r[7]),
        total_price=_opt_float(r[8]),
        supplier=r[9],
        reference_type=str(r[10]),
        reference_id=(int(r[11]) if r[11] is not None else None),
        reference_no=r[12],
        reason=r[13],
        note=r[14],
        created_at=str(r[15]),
        updated_at=r[16],
    )


def _invoice_item(r) -> InvoiceItem:
    return InvoiceItem(
        id=int(r[0]),
        invoice_id=int(r[1]),
        item_name=str(r[2]),
        quantity=float(r[3]),
        unit=r[4],
        unit_price=float(r[5]),
        total_price=float(r[6]),
        box_qty=float(r[7]),
        ea_qty=float(r[8]),
        match_status=str(r[9]),
        matched_ingredient_id=(int(r[10]) if r[10] is not None else None),
        confirmed_qty=float(r[11]),
        movement_id=(int(r[12]) if r[12] is not None else None),
    )


def _invoice(r, items: Iterable[InvoiceItem] = ()) -> Invoice:
    return Invoice(
        id=int(r[0]),
        branch_id=str(r[1]),
        supplier_name=r[2],
        invoice_no=r[3],
        invoice_date=r[4],
        image_url=r[5],
        status=str(r[6]),
        total_amount=float(r[7]),
        confirmed_amount=float(r[8]),
        received_at=str(r[9]),
        confirmed_at=r[10],
        confirmed_by=r[11],
        notes=r[12],
        items=tuple(items),
    )


def _closing_item(r) -> ClosingItem:
    return ClosingItem(
        id=int(r[0]),
        closing_id=int(r[1]),
        ingredient_id=int(r[2]),
        opening_qty=float(r[3]),
        closing_boxes=float(r[4]),
        closing_packs=float(r[5]),
        closing_units=float(r[6]),
        closing_qty=float(r[7]),
        waste_qty=float(r[8]),
        note=r[9],
    )


def _closing(r, items: Iterable[ClosingItem] = ()) -> DailyClosing:
    return DailyClosing(
        id=int(r[0]),
        branch_id=str(r[1]),
        closing_date=str(r[2]),
        status=str(r[3]),
        closed_by=r[4],
        closed_at=r[5],
        note=r[6],
        items=tuple(items),
    )


class SqliteRepository:
    def __init__(self, db_path: Path | str, busy_timeout: float = 30.0):
        self.db_path = str(db_path)
        self.busy_timeout = float(busy_timeout)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Cursor]:
        """Single write transaction.

        BEGIN IMMEDIATE takes the database write lock up front, so every
        read-modify-write of ``current_qty`` inside the block is atomic with
        respect to other connections. Driver errors roll back and surface as
        PersistenceError; domain errors roll back and propagate unchanged.
        """
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn.cursor()
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            log.error("persistence_failed db=%s error=%s", self.db_path, exc, exc_info=True)
            raise PersistenceError(f"Database write failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _fetchone(self, sql: str, params: tuple = ()):
        conn = self._conn()
        try:
            cur = conn.cursor()
            cur.execute(sql, params)
            return cur.fetchone()
        finally:
            conn.close()

    def _fetchall(self, sql: str, params: tuple = ()) -> list:
        conn = self._conn()
        try:
            cur = conn.cursor()
            cur.execute(sql, params)
            return cur.fetchall()
        finally:
            conn.close()

    # ---------- Schema ----------
    def init_db(self) -> None:
        self.run_migrations()

    def run_migrations(self) -> None:
        conn = self._conn()
        backup_path = self._create_pre_migration_backup()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_ledger),
                (2, self._migration_v2_invoices),
                (3, self._migration_v3_closings),
                (4, self._migration_v4_api_usage),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_ledger(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ingredients (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                branch_id TEXT NOT NULL,
                name TEXT NOT NULL,
                unit TEXT NOT NULL DEFAULT 'ea',
                current_qty REAL NOT NULL DEFAULT 0,
                units_per_pack REAL CHECK(units_per_pack IS NULL OR units_per_pack > 0),
                packs_per_box REAL CHECK(packs_per_box IS NULL OR packs_per_box > 0),
                reorder_point REAL CHECK(reorder_point IS NULL OR reorder_point >= 0),
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at TEXT,
                UNIQUE(branch_id, name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stock_movements (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ingredient_id INTEGER NOT NULL,
                movement_type TEXT NOT NULL CHECK(movement_type IN ('in','out','waste','adjustment')),
                quantity REAL NOT NULL,
                qty_delta REAL NOT NULL,
                previous_qty REAL NOT NULL,
                resulting_qty REAL NOT NULL,
                unit_price REAL CHECK(unit_price IS NULL OR unit_price >= 0),
                total_price REAL,
                supplier TEXT,
                reference_type TEXT NOT NULL DEFAULT 'manual' CHECK(reference_type IN ('manual','invoice')),
                reference_id INTEGER,
                reference_no TEXT,
                reason TEXT,
                note TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                FOREIGN KEY(ingredient_id) REFERENCES ingredients(id)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_movements_ingredient ON stock_movements(ingredient_id, created_at)")

    def _migration_v2_invoices(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS invoices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                branch_id TEXT NOT NULL,
                supplier_name TEXT,
                invoice_no TEXT,
                invoice_date TEXT,
                image_url TEXT,
                status TEXT NOT NULL DEFAULT 'received'
                    CHECK(status IN ('received','inspecting','confirmed','disputed')),
                total_amount REAL NOT NULL DEFAULT 0 CHECK(total_amount >= 0),
                confirmed_amount REAL NOT NULL DEFAULT 0,
                received_at TEXT NOT NULL,
                confirmed_at TEXT,
                confirmed_by TEXT,
                notes TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS invoice_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                invoice_id INTEGER NOT NULL,
                item_name TEXT NOT NULL,
                quantity REAL NOT NULL CHECK(quantity > 0),
                unit TEXT,
                unit_price REAL NOT NULL DEFAULT 0 CHECK(unit_price >= 0),
                total_price REAL NOT NULL DEFAULT 0 CHECK(total_price >= 0),
                box_qty REAL NOT NULL DEFAULT 0,
                ea_qty REAL NOT NULL DEFAULT 0,
                match_status TEXT NOT NULL DEFAULT 'unmatched'
                    CHECK(match_status IN ('auto_matched','manual_matched','unmatched','new_ingredient')),
                matched_ingredient_id INTEGER,
                confirmed_qty REAL NOT NULL CHECK(confirmed_qty >= 0),
                movement_id INTEGER,
                FOREIGN KEY(invoice_id) REFERENCES invoices(id) ON DELETE CASCADE,
                FOREIGN KEY(matched_ingredient_id) REFERENCES ingredients(id),
                FOREIGN KEY(movement_id) REFERENCES stock_movements(id) ON DELETE SET NULL
            )
            """
        )

    def _migration_v3_closings(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS daily_closings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                branch_id TEXT NOT NULL,
                closing_date TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'draft' CHECK(status IN ('draft','completed')),
                closed_by TEXT,
                closed_at TEXT,
                note TEXT,
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at TEXT,
                UNIQUE(branch_id, closing_date)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS daily_closing_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                closing_id INTEGER NOT NULL,
                ingredient_id INTEGER NOT NULL,
                opening_qty REAL NOT NULL,
                closing_boxes REAL NOT NULL DEFAULT 0 CHECK(closing_boxes >= 0),
                closing_packs REAL NOT NULL DEFAULT 0 CHECK(closing_packs >= 0),
                closing_units REAL NOT NULL DEFAULT 0 CHECK(closing_units >= 0),
                closing_qty REAL NOT NULL CHECK(closing_qty >= 0),
                waste_qty REAL NOT NULL DEFAULT 0 CHECK(waste_qty >= 0),
                note TEXT,
                FOREIGN KEY(closing_id) REFERENCES daily_closings(id) ON DELETE CASCADE,
                FOREIGN KEY(ingredient_id) REFERENCES ingredients(id),
                UNIQUE(closing_id, ingredient_id)
            )
            """
        )

    def _migration_v4_api_usage(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS api_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                api_name TEXT NOT NULL,
                year_month TEXT NOT NULL,
                count INTEGER NOT NULL DEFAULT 0 CHECK(count >= 0),
                UNIQUE(api_name, year_month)
            )
            """
        )

    # ---------- Quantity primitives ----------
    # The only two statements in the codebase that write ingredients.current_qty.
    def _apply_qty_delta(self, cur: sqlite3.Cursor, ingredient_id: int, delta: float) -> tuple[float, float]:
        cur.execute("SELECT current_qty FROM ingredients WHERE id=?", (int(ingredient_id),))
        row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Ingredient {ingredient_id} not found.")
        cur.execute(
            "UPDATE ingredients SET current_qty = current_qty + ?, updated_at=? WHERE id=?",
            (float(delta), _now_iso(), int(ingredient_id)),
        )
        cur.execute("SELECT current_qty FROM ingredients WHERE id=?", (int(ingredient_id),))
        return float(row[0]), float(cur.fetchone()[0])

    def _overwrite_qty(self, cur: sqlite3.Cursor, ingredient_id: int, qty: float) -> float:
        cur.execute("SELECT current_qty FROM ingredients WHERE id=?", (int(ingredient_id),))
        row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Ingredient {ingredient_id} not found.")
        cur.execute(
            "UPDATE ingredients SET current_qty=?, updated_at=? WHERE id=?",
            (float(qty), _now_iso(), int(ingredient_id)),
        )
        return float(row[0])

    # ---------- Ingredients ----------
    def add_ingredient(
        self,
        branch_id: str,
        name: str,
        unit: str,
        current_qty: float = 0.0,
        units_per_pack: Optional[float] = None,
        packs_per_box: Optional[float] = None,
        reorder_point: Optional[float] = None,
    ) -> int:
        with self._write() as cur:
            cur.execute(
                """
                INSERT INTO ingredients (branch_id, name, unit, current_qty, units_per_pack, packs_per_box, reorder_point, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (branch_id, name, unit, float(current_qty), units_per_pack, packs_per_box, reorder_point, _now_iso()),
            )
            return int(cur.lastrowid)

    def get_ingredient(self, ingredient_id: int) -> Optional[Ingredient]:
        r = self._fetchone(f"SELECT {INGREDIENT_COLUMNS} FROM ingredients WHERE id=?", (int(ingredient_id),))
        return _ingredient(r) if r else None

    def get_ingredient_by_name(self, branch_id: str, name: str) -> Optional[Ingredient]:
        r = self._fetchone(
            f"SELECT {INGREDIENT_COLUMNS} FROM ingredients WHERE branch_id=? AND name=?",
            (branch_id, name),
        )
        return _ingredient(r) if r else None

    def list_ingredients(self, branch_id: str) -> list[Ingredient]:
        rows = self._fetchall(
            f"SELECT {INGREDIENT_COLUMNS} FROM ingredients WHERE branch_id=? ORDER BY name, id",
            (branch_id,),
        )
        return [_ingredient(r) for r in rows]

    def list_low_stock(self, branch_id: str) -> list[Ingredient]:
        rows = self._fetchall(
            f"""
            SELECT {INGREDIENT_COLUMNS}
            FROM ingredients
            WHERE branch_id=? AND reorder_point IS NOT NULL AND current_qty <= reorder_point
            ORDER BY (current_qty - reorder_point) ASC, name ASC
            """,
            (branch_id,),
        )
        return [_ingredient(r) for r in rows]

    def update_ingredient_packaging(
        self,
        ingredient_id: int,
        units_per_pack: Optional[float],
        packs_per_box: Optional[float],
        reorder_point: Optional[float],
    ) -> bool:
        with self._write() as cur:
            cur.execute(
                """
                UPDATE ingredients
                SET units_per_pack=?, packs_per_box=?, reorder_point=?, updated_at=?
                WHERE id=?
                """,
                (units_per_pack, packs_per_box, reorder_point, _now_iso(), int(ingredient_id)),
            )
            return cur.rowcount > 0

    # ---------- Stock movements ----------
    def _insert_movement(
        self,
        cur: sqlite3.Cursor,
        ingredient_id: int,
        movement_type: str,
        quantity: float,
        qty_delta: float,
        unit_price: Optional[float] = None,
        total_price: Optional[float] = None,
        supplier: Optional[str] = None,
        reference_type: str = "manual",
        reference_id: Optional[int] = None,
        reference_no: Optional[str] = None,
        reason: Optional[str] = None,
        note: Optional[str] = None,
    ) -> int:
        previous, resulting = self._apply_qty_delta(cur, ingredient_id, qty_delta)
        cur.execute(
            """
            INSERT INTO stock_movements (
                ingredient_id, movement_type, quantity, qty_delta, previous_qty, resulting_qty,
                unit_price, total_price, supplier, reference_type, reference_id, reference_no,
                reason, note, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(ingredient_id),
                movement_type,
                float(quantity),
                float(qty_delta),
                previous,
                resulting,
                unit_price,
                total_price,
                supplier,
                reference_type,
                reference_id,
                reference_no,
                reason,
                note,
                _now_iso(),
            ),
        )
        return int(cur.lastrowid)

    def _movement_row(self, cur: sqlite3.Cursor, movement_id: int):
        cur.execute(f"SELECT {MOVEMENT_COLUMNS} FROM stock_movements WHERE id=?", (int(movement_id),))
        row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Stock movement {movement_id} not found.")
        return row

    def record_movement(self, ingredient_id: int, movement_type: str, quantity: float, qty_delta: float, **metadata) -> StockMovement:
        with self._write() as cur:
            movement_id = self._insert_movement(cur, ingredient_id, movement_type, quantity, qty_delta, **metadata)
            return _movement(self._movement_row(cur, movement_id))

    def update_movement(
        self,
        movement_id: int,
        ingredient_id: int,
        movement_type: str,
        quantity: float,
        qty_delta: float,
        unit_price: Optional[float] = None,
        total_price: Optional[float] = None,
        supplier: Optional[str] = None,
        reference_no: Optional[str] = None,
        reason: Optional[str] = None,
        note: Optional[str] = None,
    ) -> StockMovement:
        with self._write() as cur:
            old = _movement(self._movement_row(cur, movement_id))
            # reverse the stored effect first, then apply the new one
            self._apply_qty_delta(cur, old.ingredient_id, -old.qty_delta)
            previous, resulting = self._apply_qty_delta(cur, ingredient_id, qty_delta)
            cur.execute(
                """
                UPDATE stock_movements
                SET ingredient_id=?, movement_type=?, quantity=?, qty_delta=?, previous_qty=?, resulting_qty=?,
                    unit_price=?, total_price=?, supplier=?, reference_no=?, reason=?, note=?, updated_at=?
                WHERE id=?
                """,
                (
                    int(ingredient_id),
                    movement_type,
                    float(quantity),
                    float(qty_delta),
                    previous,
                    resulting,
                    unit_price,
                    total_price,
                    supplier,
                    reference_no,
                    reason,
                    note,
                    _now_iso(),
                    int(movement_id),
                ),
            )
            return _movement(self._movement_row(cur, movement_id))

    def delete_movement(self, movement_id: int) -> StockMovement:
        with self._write() as cur:
            old = _movement(self._movement_row(cur, movement_id))
            self._apply_qty_delta(cur, old.ingredient_id, -old.qty_delta)
            cur.execute("DELETE FROM stock_movements WHERE id=?", (int(movement_id),))
            return old

    def get_movement(self, movement_id: int) -> Optional[StockMovement]:
        r = self._fetchone(f"SELECT {MOVEMENT_COLUMNS} FROM stock_movements WHERE id=?", (int(movement_id),))
        return _movement(r) if r else None

    def list_movements(
        self,
        ingredient_id: Optional[int] = None,
        start_iso: Optional[str] = None,
        end_iso: Optional[str] = None,
    ) -> list[StockMovement]:
        clauses = []
        params: list = []
        if ingredient_id is not None:
            clauses.append("ingredient_id = ?")
            params.append(int(ingredient_id))
        if start_iso:
            clauses.append("created_at >= ?")
            params.append(start_iso)
        if end_iso:
            clauses.append("created_at < ?")
            params.append(end_iso)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(
            f"SELECT {MOVEMENT_COLUMNS} FROM stock_movements {where} ORDER BY created_at, id",
            tuple(params),
        )
        return [_movement(r) for r in rows]

    # ---------- Invoices ----------
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
    ) -> int:
        with self._write() as cur:
            cur.execute(
                """
                INSERT INTO invoices (
                    branch_id, supplier_name, invoice_no, invoice_date, image_url, status,
                    total_amount, confirmed_amount, received_at, notes
                )
                VALUES (?, ?, ?, ?, ?, 'received', ?, 0, ?, ?)
                """,
                (branch_id, supplier_name, invoice_no, invoice_date, image_url, float(total_amount), _now_iso(), notes),
            )
            invoice_id = int(cur.lastrowid)

            for it in items:
                cur.execute(
                    """
                    INSERT INTO invoice_items (
                        invoice_id, item_name, quantity, unit, unit_price, total_price, box_qty, ea_qty,
                        match_status, matched_ingredient_id, confirmed_qty
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        invoice_id,
                        it["item_name"],
                        float(it["quantity"]),
                        it.get("unit"),
                        float(it.get("unit_price") or 0),
                        float(it.get("total_price") or 0),
                        float(it.get("box_qty") or 0),
                        float(it.get("ea_qty") or 0),
                        it["match_status"],
                        it.get("matched_ingredient_id"),
                        float(it["quantity"]),
                    ),
                )
            return invoice_id

    def invoice_items_for_invoice(self, invoice_id: int) -> list[InvoiceItem]:
        rows = self._fetchall(
            f"SELECT {INVOICE_ITEM_COLUMNS} FROM invoice_items WHERE invoice_id=? ORDER BY id",
            (int(invoice_id),),
        )
        return [_invoice_item(r) for r in rows]

    def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        r = self._fetchone(f"SELECT {INVOICE_COLUMNS} FROM invoices WHERE id=?", (int(invoice_id),))
        if not r:
            return None
        return _invoice(r, self.invoice_items_for_invoice(invoice_id))

    def get_invoice_item(self, item_id: int) -> Optional[InvoiceItem]:
        r = self._fetchone(f"SELECT {INVOICE_ITEM_COLUMNS} FROM invoice_items WHERE id=?", (int(item_id),))
        return _invoice_item(r) if r else None

    def list_invoices(
        self,
        branch_id: str,
        status: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> list[Invoice]:
        clauses = ["branch_id = ?"]
        params: list = [branch_id]
        if status:
            clauses.append("status = ?")
            params.append(status)
        if date_from:
            clauses.append("COALESCE(invoice_date, substr(received_at, 1, 10)) >= ?")
            params.append(date_from)
        if date_to:
            clauses.append("COALESCE(invoice_date, substr(received_at, 1, 10)) <= ?")
            params.append(date_to)
        rows = self._fetchall(
            f"SELECT {INVOICE_COLUMNS} FROM invoices WHERE {' AND '.join(clauses)} ORDER BY received_at DESC, id DESC",
            tuple(params),
        )
        return [_invoice(r) for r in rows]

    def transition_invoice(
        self,
        invoice_id: int,
        from_statuses: Iterable[str],
        to_status: str,
        confirmed_by: Optional[str] = None,
        item_overrides: Iterable[dict] = (),
    ) -> bool:
        """Conditional status update; False when the invoice is not in any of ``from_statuses``.

        item_overrides: [{item_id, confirmed_qty?, matched_ingredient_id?}], written
        in the same transaction as the status change and only when it succeeds.
        """
        allowed = tuple(from_statuses)
        marks = ", ".join("?" for _ in allowed)
        with self._write() as cur:
            if to_status == "confirmed":
                cur.execute(
                    f"UPDATE invoices SET status=?, confirmed_at=?, confirmed_by=? WHERE id=? AND status IN ({marks})",
                    (to_status, _now_iso(), confirmed_by, int(invoice_id), *allowed),
                )
            else:
                cur.execute(
                    f"UPDATE invoices SET status=? WHERE id=? AND status IN ({marks})",
                    (to_status, int(invoice_id), *allowed),
                )
            if cur.rowcount == 0:
                return False

            for ov in item_overrides:
                if ov.get("confirmed_qty") is not None:
                    cur.execute(
                        "UPDATE invoice_items SET confirmed_qty=? WHERE id=? AND invoice_id=?",
                        (float(ov["confirmed_qty"]), int(ov["item_id"]), int(invoice_id)),
                    )
                if ov.get("matched_ingredient_id") is not None:
                    cur.execute(
                        "UPDATE invoice_items SET matched_ingredient_id=?, match_status='manual_matched' "
                        "WHERE id=? AND invoice_id=?",
                        (int(ov["matched_ingredient_id"]), int(ov["item_id"]), int(invoice_id)),
                    )
            return True

    def update_item_match(self, item_id: int, ingredient_id: Optional[int], match_status: str) -> bool:
        """False when the item is missing or its invoice is no longer open for edits."""
        with self._write() as cur:
            cur.execute(
                f"UPDATE invoice_items SET matched_ingredient_id=?, match_status=? WHERE id=? AND {_OPEN_INVOICE_ITEM}",
                (ingredient_id, match_status, int(item_id)),
            )
            return cur.rowcount > 0

    def update_item_confirmed_qty(self, item_id: int, confirmed_qty: float) -> bool:
        with self._write() as cur:
            cur.execute(
                f"UPDATE invoice_items SET confirmed_qty=? WHERE id=? AND {_OPEN_INVOICE_ITEM}",
                (float(confirmed_qty), int(item_id)),
            )
            return cur.rowcount > 0

    def update_invoice_notes(self, invoice_id: int, notes: Optional[str]) -> bool:
        with self._write() as cur:
            cur.execute("UPDATE invoices SET notes=? WHERE id=?", (notes, int(invoice_id)))
            return cur.rowcount > 0

    def delete_invoice(self, invoice_id: int, deletable_statuses: Iterable[str]) -> bool:
        allowed = tuple(deletable_statuses)
        marks = ", ".join("?" for _ in allowed)
        with self._write() as cur:
            cur.execute(
                f"DELETE FROM invoices WHERE id=? AND status IN ({marks})",
                (int(invoice_id), *allowed),
            )
            return cur.rowcount > 0

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
    ) -> tuple[int, int]:
        """Turn one confirmed invoice line into exactly one ``in`` movement.

        Movement, quantity effect, item link and the invoice's confirmed_amount
        are committed together. ``new_ingredient`` ({branch_id, name, unit})
        creates the catalog entry inside the same transaction.
        """
        with self._write() as cur:
            cur.execute("SELECT movement_id FROM invoice_items WHERE id=? AND invoice_id=?", (int(item_id), int(invoice_id)))
            row = cur.fetchone()
            if not row:
                raise NotFoundError(f"Invoice item {item_id} not found.")
            if row[0] is not None:
                raise InvalidTransitionError(f"Invoice item {item_id} was already applied to stock.")

            if new_ingredient is not None:
                cur.execute(
                    "SELECT id FROM ingredients WHERE branch_id=? AND name=?",
                    (new_ingredient["branch_id"], new_ingredient["name"]),
                )
                existing = cur.fetchone()
                if existing:
                    ingredient_id = int(existing[0])
                else:
                    cur.execute(
                        "INSERT INTO ingredients (branch_id, name, unit, current_qty, updated_at) VALUES (?, ?, ?, 0, ?)",
                        (new_ingredient["branch_id"], new_ingredient["name"], new_ingredient["unit"], _now_iso()),
                    )
                    ingredient_id = int(cur.lastrowid)
            if ingredient_id is None:
                raise NotFoundError(f"Invoice item {item_id} has no ingredient to apply.")

            amount = float(quantity) * float(unit_price)
            movement_id = self._insert_movement(
                cur,
                ingredient_id,
                "in",
                quantity,
                float(quantity),
                unit_price=float(unit_price),
                total_price=amount,
                supplier=supplier,
                reference_type="invoice",
                reference_id=int(invoice_id),
                reference_no=reference_no,
            )
            cur.execute(
                "UPDATE invoice_items SET movement_id=?, matched_ingredient_id=?, confirmed_qty=? WHERE id=?",
                (movement_id, int(ingredient_id), float(quantity), int(item_id)),
            )
            cur.execute(
                "UPDATE invoices SET confirmed_amount = confirmed_amount + ? WHERE id=?",
                (amount, int(invoice_id)),
            )
            return movement_id, int(ingredient_id)

    # ---------- Daily closings ----------
    def closing_items_for_closing(self, closing_id: int) -> list[ClosingItem]:
        rows = self._fetchall(
            f"SELECT {CLOSING_ITEM_COLUMNS} FROM daily_closing_items WHERE closing_id=? ORDER BY id",
            (int(closing_id),),
        )
        return [_closing_item(r) for r in rows]

    def get_closing(self, closing_id: int) -> Optional[DailyClosing]:
        r = self._fetchone(f"SELECT {CLOSING_COLUMNS} FROM daily_closings WHERE id=?", (int(closing_id),))
        if not r:
            return None
        return _closing(r, self.closing_items_for_closing(closing_id))

    def get_closing_by_date(self, branch_id: str, closing_date: str) -> Optional[DailyClosing]:
        r = self._fetchone(
            f"SELECT {CLOSING_COLUMNS} FROM daily_closings WHERE branch_id=? AND closing_date=?",
            (branch_id, closing_date),
        )
        if not r:
            return None
        return _closing(r, self.closing_items_for_closing(int(r[0])))

    def list_closings(self, branch_id: str, limit: int = 30) -> list[DailyClosing]:
        rows = self._fetchall(
            f"SELECT {CLOSING_COLUMNS} FROM daily_closings WHERE branch_id=? ORDER BY closing_date DESC LIMIT ?",
            (branch_id, int(limit)),
        )
        return [_closing(r) for r in rows]

    def save_closing_draft(self, branch_id: str, closing_date: str, items: Iterable[dict], note: Optional[str] = None) -> int:
        """Create or reuse the (branch, date) draft and replace its items wholesale.

        ``opening_qty`` is read from the ingredient inside this transaction.
        """
        now = _now_iso()
        with self._write() as cur:
            cur.execute(
                "SELECT id, status FROM daily_closings WHERE branch_id=? AND closing_date=?",
                (branch_id, closing_date),
            )
            row = cur.fetchone()
            if row and row[1] == "completed":
                raise InvalidTransitionError(f"Closing for {closing_date} is already completed.")

            if row:
                closing_id = int(row[0])
                cur.execute("UPDATE daily_closings SET note=?, updated_at=? WHERE id=?", (note, now, closing_id))
                cur.execute("DELETE FROM daily_closing_items WHERE closing_id=?", (closing_id,))
            else:
                cur.execute(
                    "INSERT INTO daily_closings (branch_id, closing_date, status, note, updated_at) VALUES (?, ?, 'draft', ?, ?)",
                    (branch_id, closing_date, note, now),
                )
                closing_id = int(cur.lastrowid)

            for it in items:
                cur.execute("SELECT current_qty FROM ingredients WHERE id=?", (int(it["ingredient_id"]),))
                ing = cur.fetchone()
                if not ing:
                    raise NotFoundError(f"Ingredient {it['ingredient_id']} not found.")
                cur.execute(
                    """
                    INSERT INTO daily_closing_items (
                        closing_id, ingredient_id, opening_qty, closing_boxes, closing_packs, closing_units,
                        closing_qty, waste_qty, note
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        closing_id,
                        int(it["ingredient_id"]),
                        float(ing[0]),
                        float(it["boxes"]),
                        float(it["packs"]),
                        float(it["units"]),
                        float(it["closing_qty"]),
                        float(it.get("waste_qty") or 0),
                        it.get("note"),
                    ),
                )
            return closing_id

    def complete_closing(self, closing_id: int, closed_by: Optional[str]) -> list[tuple[int, float, float]]:
        """Mark the closing completed and overwrite current_qty for every item.

        Returns (ingredient_id, previous_qty, closing_qty) per item.
        """
        now = _now_iso()
        with self._write() as cur:
            cur.execute("SELECT status FROM daily_closings WHERE id=?", (int(closing_id),))
            row = cur.fetchone()
            if not row:
                raise NotFoundError(f"Closing {closing_id} not found.")
            if row[0] != "draft":
                raise InvalidTransitionError(f"Closing {closing_id} is already completed.")

            cur.execute(
                """
                UPDATE daily_closings
                SET status='completed', closed_by=?, closed_at=?, updated_at=?
                WHERE id=? AND status='draft'
                """,
                (closed_by, now, now, int(closing_id)),
            )

            cur.execute(
                "SELECT ingredient_id, closing_qty FROM daily_closing_items WHERE closing_id=? ORDER BY id",
                (int(closing_id),),
            )
            changes = []
            for ingredient_id, closing_qty in cur.fetchall():
                previous = self._overwrite_qty(cur, int(ingredient_id), float(closing_qty))
                changes.append((int(ingredient_id), previous, float(closing_qty)))
            return changes

    # ---------- API usage ----------
    def get_usage_count(self, api_name: str, period_key: str) -> int:
        r = self._fetchone(
            "SELECT count FROM api_usage WHERE api_name=? AND year_month=?",
            (api_name, period_key),
        )
        return int(r[0]) if r else 0

    def increment_usage_atomic(self, api_name: str, period_key: str) -> int:
        if sqlite3.sqlite_version_info < UPSERT_MIN_VERSION:
            raise AtomicIncrementUnavailable(f"sqlite {sqlite3.sqlite_version} has no upsert support.")
        with self._write() as cur:
            cur.execute(
                """
                INSERT INTO api_usage (api_name, year_month, count) VALUES (?, ?, 1)
                ON CONFLICT(api_name, year_month) DO UPDATE SET count = count + 1
                """,
                (api_name, period_key),
            )
            cur.execute(
                "SELECT count FROM api_usage WHERE api_name=? AND year_month=?",
                (api_name, period_key),
            )
            return int(cur.fetchone()[0])

    def increment_usage_read_modify_write(self, api_name: str, period_key: str) -> int:
        """Non-atomic increment: the read and the write are separate statements.

        Concurrent callers can both read N and both write N+1. Kept only as the
        degraded path for stores without an upsert primitive.
        """
        r = self._fetchone(
            "SELECT id, count FROM api_usage WHERE api_name=? AND year_month=?",
            (api_name, period_key),
        )
        if r:
            new_count = int(r[1]) + 1
            with self._write() as cur:
                cur.execute("UPDATE api_usage SET count=? WHERE id=?", (new_count, int(r[0])))
            return new_count

        with self._write() as cur:
            cur.execute(
                "INSERT INTO api_usage (api_name, year_month, count) VALUES (?, ?, 1)",
                (api_name, period_key),
            )
        return 1
