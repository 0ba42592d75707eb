"""
Lot ledger: the only code that changes lots.quantity_on_hand.

Every quantity change goes through apply_movement(), which updates the cached
on-hand figure and appends exactly one stock_movements row carrying the same
signed quantity, inside one transaction. Movements are never edited or
removed (the schema blocks it with triggers); a correction is a new
adjustment movement.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pharmacy.db import atomic, q, q1, x
from pharmacy.errors import InsufficientStockError, NotFoundError, ValidationError
from pharmacy.utils import DateLike, iso_now, iso_today, parse_date

logger = logging.getLogger(__name__)


class MovementKind(str, Enum):
    PURCHASE_RECEIPT = "purchase_receipt"
    SALE_ISSUE = "sale_issue"
    POSITIVE_ADJUSTMENT = "positive_adjustment"
    NEGATIVE_ADJUSTMENT = "negative_adjustment"
    EXPIRY_WRITEOFF = "expiry_writeoff"
    RETURN = "return"

    @property
    def sign(self) -> int:
        return 1 if self in _INBOUND else -1


_INBOUND = {MovementKind.PURCHASE_RECEIPT, MovementKind.POSITIVE_ADJUSTMENT, MovementKind.RETURN}


@dataclass(frozen=True)
class Lot:
    id: int
    presentation_id: int
    lot_code: str
    expiry_date: str
    quantity_on_hand: int
    unit_purchase_cost: float
    box_purchase_cost: float
    received_date: str
    location: Optional[str] = None


@dataclass(frozen=True)
class StockMovement:
    id: int
    kind: MovementKind
    lot_id: int
    quantity: int
    reference: str
    moved_at: str
    user_id: Optional[int] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class LotDiscrepancy:
    lot_id: int
    cached_quantity: int
    movement_sum: int


def lot_from_row(r) -> Lot:
    return Lot(
        id=int(r["id"]),
        presentation_id=int(r["presentation_id"]),
        lot_code=str(r["lot_code"]),
        expiry_date=str(r["expiry_date"]),
        quantity_on_hand=int(r["quantity_on_hand"]),
        unit_purchase_cost=float(r["unit_purchase_cost"]),
        box_purchase_cost=float(r["box_purchase_cost"]),
        received_date=str(r["received_date"]),
        location=r["location"],
    )


def _movement_from_row(r) -> StockMovement:
    return StockMovement(
        id=int(r["id"]),
        kind=MovementKind(r["kind"]),
        lot_id=int(r["lot_id"]),
        quantity=int(r["quantity"]),
        reference=str(r["reference"]),
        moved_at=str(r["moved_at"]),
        user_id=int(r["user_id"]) if r["user_id"] is not None else None,
        notes=r["notes"],
    )


def as_quantity(value, *, field: str = "quantity") -> int:
    """Stock is counted in whole base units."""
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number.", field=field)
    if not math.isfinite(f):
        raise ValidationError(f"{field} must be a finite number.", field=field)
    if f != int(f):
        raise ValidationError(f"{field} must be a whole number of base units.", field=field)
    return int(f)


def get_lot(conn, lot_id: int) -> Lot:
    r = q1(conn, "SELECT * FROM lots WHERE id=?", (int(lot_id),))
    if r is None:
        raise NotFoundError("Lot", lot_id)
    return lot_from_row(r)


def find_lot(conn, presentation_id: int, lot_code: str) -> Optional[Lot]:
    r = q1(
        conn,
        "SELECT * FROM lots WHERE presentation_id=? AND lot_code=?",
        (int(presentation_id), str(lot_code).strip()),
    )
    return lot_from_row(r) if r else None


def list_lots(conn, presentation_id: Optional[int] = None, *, include_empty: bool = True) -> list[Lot]:
    sql = "SELECT * FROM lots WHERE 1=1"
    params: list = []
    if presentation_id is not None:
        sql += " AND presentation_id=?"
        params.append(int(presentation_id))
    if not include_empty:
        sql += " AND quantity_on_hand > 0"
    sql += " ORDER BY expiry_date ASC, id ASC"
    return [lot_from_row(r) for r in q(conn, sql, params)]


def upsert_lot(
    conn,
    presentation_id: int,
    lot_code: str,
    expiry_date: DateLike,
    unit_purchase_cost: float,
    *,
    box_purchase_cost: Optional[float] = None,
    received_date: Optional[DateLike] = None,
) -> Lot:
    """
    Resolve the lot for (presentation, lot code), creating it empty if needed.

    Quantity is never touched here; callers follow up with apply_movement().
    A repeated receipt refreshes the purchase cost to the latest one and
    returns the existing lot; its recorded expiry is kept.
    """
    code = str(lot_code or "").strip()
    if not code:
        raise ValidationError("Lot code is required.", field="lot_code")
    expiry = parse_date(expiry_date, field="expiry_date").isoformat()
    try:
        unit_cost = float(unit_purchase_cost)
    except (TypeError, ValueError):
        raise ValidationError("Unit purchase cost must be a number.", field="unit_purchase_cost")
    if unit_cost < 0:
        raise ValidationError("Unit purchase cost must be >= 0.", field="unit_purchase_cost")
    box_cost = float(box_purchase_cost) if box_purchase_cost is not None else 0.0
    received = parse_date(received_date or iso_today(), field="received_date").isoformat()

    with atomic(conn):
        if q1(conn, "SELECT id FROM presentations WHERE id=?", (int(presentation_id),)) is None:
            raise NotFoundError("Presentation", presentation_id)

        existing = find_lot(conn, int(presentation_id), code)
        if existing is not None:
            if existing.expiry_date != expiry:
                logger.warning(
                    "Lot %s received with expiry %s, keeping recorded expiry %s",
                    code,
                    expiry,
                    existing.expiry_date,
                )
            x(
                conn,
                "UPDATE lots SET unit_purchase_cost=?, box_purchase_cost=? WHERE id=?",
                (unit_cost, box_cost or existing.box_purchase_cost, existing.id),
            )
            return get_lot(conn, existing.id)

        res = x(
            conn,
            """
            INSERT INTO lots (
                presentation_id, lot_code, expiry_date, quantity_on_hand,
                unit_purchase_cost, box_purchase_cost, received_date
            ) VALUES (?, ?, ?, 0, ?, ?, ?)
            """,
            (int(presentation_id), code, expiry, unit_cost, box_cost, received),
        )
        logger.info("Created lot %s (%s) for presentation %s", res.inserted_id, code, presentation_id)
        return get_lot(conn, res.inserted_id)


def apply_movement(
    conn,
    lot_id: int,
    kind: MovementKind | str,
    quantity: int,
    reference: str,
    *,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> StockMovement:
    """
    Change a lot's on-hand quantity by `quantity` and record the movement.

    The sign must match the kind (receipts, positive adjustments and returns
    add; sales, negative adjustments and expiry write-offs remove). Raises
    InsufficientStockError without touching anything when the lot would go
    below zero.
    """
    try:
        kind = MovementKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown movement kind: {kind!r}.", field="kind")
    qty = as_quantity(quantity)
    if qty == 0:
        raise ValidationError("Movement quantity cannot be zero.", field="quantity")
    if (qty > 0) != (kind.sign > 0):
        raise ValidationError(
            f"A {kind.value} movement must be {'positive' if kind.sign > 0 else 'negative'}.",
            field="quantity",
        )
    reference = str(reference or "").strip()
    if not reference:
        raise ValidationError("Movement reference is required.", field="reference")

    with atomic(conn):
        r = q1(conn, "SELECT quantity_on_hand FROM lots WHERE id=?", (int(lot_id),))
        if r is None:
            raise NotFoundError("Lot", lot_id)
        on_hand = int(r["quantity_on_hand"])
        if on_hand + qty < 0:
            logger.warning("Rejected %s of %s on lot %s (on hand %s)", kind.value, qty, lot_id, on_hand)
            raise InsufficientStockError(int(lot_id), on_hand, -qty)

        updated = x(
            conn,
            "UPDATE lots SET quantity_on_hand = quantity_on_hand + ? WHERE id=? AND quantity_on_hand + ? >= 0",
            (qty, int(lot_id), qty),
        )
        if updated.rows_affected != 1:
            raise InsufficientStockError(int(lot_id), on_hand, -qty)

        moved_at = iso_now()
        res = x(
            conn,
            """
            INSERT INTO stock_movements (kind, lot_id, quantity, reference, moved_at, user_id, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (kind.value, int(lot_id), qty, reference, moved_at, user_id, notes),
        )

    logger.info("Lot %s %s %+d (%s)", lot_id, kind.value, qty, reference)
    return StockMovement(
        id=res.inserted_id,
        kind=kind,
        lot_id=int(lot_id),
        quantity=qty,
        reference=reference,
        moved_at=moved_at,
        user_id=user_id,
        notes=notes,
    )


def adjust_stock(
    conn,
    lot_id: int,
    quantity: int,
    *,
    notes: str,
    kind: Optional[MovementKind | str] = None,
    user_id: Optional[int] = None,
) -> StockMovement:
    """Manual correction (stocktake, breakage, customer return)."""
    if not str(notes or "").strip():
        raise ValidationError("An adjustment needs a reason in notes.", field="notes")
    qty = as_quantity(quantity)
    if kind is None:
        kind = MovementKind.POSITIVE_ADJUSTMENT if qty > 0 else MovementKind.NEGATIVE_ADJUSTMENT
    kind = MovementKind(kind)
    if kind in (MovementKind.PURCHASE_RECEIPT, MovementKind.SALE_ISSUE):
        raise ValidationError("Receipts and sales are posted by their own documents.", field="kind")
    return apply_movement(
        conn,
        lot_id,
        kind,
        qty,
        f"ADJ-{int(lot_id)}",
        user_id=user_id,
        notes=str(notes).strip(),
    )


def write_off_expired(conn, as_of: Optional[DateLike] = None, *, user_id: Optional[int] = None) -> list[StockMovement]:
    """Bring every expired lot that still has stock down to zero."""
    cutoff = parse_date(as_of or iso_today(), field="as_of").isoformat()
    out: list[StockMovement] = []
    with atomic(conn):
        rows = q(
            conn,
            "SELECT id, quantity_on_hand FROM lots WHERE quantity_on_hand > 0 AND expiry_date < ? ORDER BY expiry_date, id",
            (cutoff,),
        )
        for r in rows:
            out.append(
                apply_movement(
                    conn,
                    int(r["id"]),
                    MovementKind.EXPIRY_WRITEOFF,
                    -int(r["quantity_on_hand"]),
                    f"EXP-{cutoff}",
                    user_id=user_id,
                    notes="Expired stock write-off",
                )
            )
    return out


def list_movements(conn, lot_id: int) -> list[StockMovement]:
    rows = q(conn, "SELECT * FROM stock_movements WHERE lot_id=? ORDER BY id ASC", (int(lot_id),))
    return [_movement_from_row(r) for r in rows]


def list_movements_by_reference(conn, reference: str) -> list[StockMovement]:
    rows = q(conn, "SELECT * FROM stock_movements WHERE reference=? ORDER BY id ASC", (str(reference),))
    return [_movement_from_row(r) for r in rows]


def movement_balance(conn, lot_id: int) -> int:
    r = q1(conn, "SELECT COALESCE(SUM(quantity), 0) AS n FROM stock_movements WHERE lot_id=?", (int(lot_id),))
    return int(r["n"])


def reconcile(conn) -> list[LotDiscrepancy]:
    """Lots whose cached on-hand differs from the sum of their movements."""
    rows = q(
        conn,
        """
        SELECT l.id, l.quantity_on_hand, COALESCE(SUM(m.quantity), 0) AS movement_sum
        FROM lots l
        LEFT JOIN stock_movements m ON m.lot_id = l.id
        GROUP BY l.id
        HAVING l.quantity_on_hand <> COALESCE(SUM(m.quantity), 0)
        ORDER BY l.id
        """,
    )
    return [
        LotDiscrepancy(
            lot_id=int(r["id"]),
            cached_quantity=int(r["quantity_on_hand"]),
            movement_sum=int(r["movement_sum"]),
        )
        for r in rows
    ]
