from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pharmacy.db import atomic, q, q1, x
from pharmacy.errors import ImmutableRecordError, NotFoundError, ValidationError
from pharmacy.utils import DateLike, iso_today, money, parse_date

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    RECEIVED = "received"
    CANCELLED = "cancelled"


# Receiving is the only way into RECEIVED, see receiving.receive().
_TRANSITIONS = {
    OrderStatus.DRAFT: {OrderStatus.PENDING, OrderStatus.CANCELLED},
    OrderStatus.PENDING: {OrderStatus.APPROVED, OrderStatus.CANCELLED},
    OrderStatus.APPROVED: {OrderStatus.PENDING, OrderStatus.CANCELLED},
    OrderStatus.RECEIVED: set(),
    OrderStatus.CANCELLED: set(),
}

RECEIVABLE = {OrderStatus.PENDING, OrderStatus.APPROVED}


@dataclass
class OrderLineInput:
    presentation_id: int
    quantity_boxes: int
    unit_price_box: float
    lot_code: Optional[str] = None
    expiry_date: Optional[str] = None
    id: Optional[int] = None

    @property
    def subtotal(self) -> float:
        return money(int(self.quantity_boxes) * float(self.unit_price_box))


@dataclass(frozen=True)
class OrderLine:
    id: int
    presentation_id: int
    quantity_boxes: int
    unit_price_box: float
    subtotal: float
    lot_code: Optional[str]
    expiry_date: Optional[str]
    lot_id: Optional[int]


@dataclass(frozen=True)
class PurchaseOrder:
    id: int
    supplier_id: int
    issued_on: str
    status: OrderStatus
    subtotal: float
    discount: float
    tax_total: float
    total: float
    currency: str
    notes: Optional[str] = None
    received_on: Optional[str] = None
    lines: list[OrderLine] = field(default_factory=list)


def _validate_line(line: OrderLineInput, idx: int) -> None:
    if int(line.quantity_boxes) <= 0:
        raise ValidationError(f"Line {idx + 1}: quantity must be > 0.", field="quantity_boxes")
    if float(line.unit_price_box) < 0:
        raise ValidationError(f"Line {idx + 1}: unit price must be >= 0.", field="unit_price_box")


def _order_totals(subtotal: float, discount: float, tax_total: float) -> float:
    return money(float(subtotal) - float(discount) + float(tax_total))


def create_purchase_order(
    conn,
    *,
    supplier_id: int,
    lines: list[OrderLineInput],
    issued_on: Optional[DateLike] = None,
    status: OrderStatus | str = OrderStatus.PENDING,
    discount: float = 0.0,
    tax_total: float = 0.0,
    currency: str = "USD",
    created_by: Optional[int] = None,
    notes: Optional[str] = None,
) -> int:
    if not lines:
        raise ValidationError("A purchase order needs at least one line.", field="lines")
    for i, line in enumerate(lines):
        _validate_line(line, i)
    status = OrderStatus(status)
    if status not in (OrderStatus.DRAFT, OrderStatus.PENDING):
        raise ValidationError("New orders start as draft or pending.", field="status")

    subtotal = money(sum(l.subtotal for l in lines))
    with atomic(conn):
        if q1(conn, "SELECT id FROM suppliers WHERE id=?", (int(supplier_id),)) is None:
            raise NotFoundError("Supplier", supplier_id)
        order_id = x(
            conn,
            """
            INSERT INTO purchase_orders (
                supplier_id, issued_on, status, subtotal, discount, tax_total, total,
                currency, created_by, notes
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(supplier_id),
                parse_date(issued_on or iso_today(), field="issued_on").isoformat(),
                status.value,
                subtotal,
                float(discount),
                float(tax_total),
                _order_totals(subtotal, discount, tax_total),
                currency,
                created_by,
                notes,
            ),
        ).inserted_id
        for line in lines:
            _insert_line(conn, order_id, line)

    logger.info("Created purchase order %s with %d line(s)", order_id, len(lines))
    return order_id


def _insert_line(conn, order_id: int, line: OrderLineInput) -> int:
    if q1(conn, "SELECT id FROM presentations WHERE id=?", (int(line.presentation_id),)) is None:
        raise NotFoundError("Presentation", line.presentation_id)
    return x(
        conn,
        """
        INSERT INTO purchase_order_lines (
            purchase_order_id, presentation_id, quantity_boxes, unit_price_box,
            subtotal, lot_code, expiry_date
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            int(order_id),
            int(line.presentation_id),
            int(line.quantity_boxes),
            float(line.unit_price_box),
            line.subtotal,
            line.lot_code,
            line.expiry_date,
        ),
    ).inserted_id


def get_purchase_order(conn, order_id: int) -> PurchaseOrder:
    r = q1(conn, "SELECT * FROM purchase_orders WHERE id=?", (int(order_id),))
    if r is None:
        raise NotFoundError("PurchaseOrder", order_id)
    lines = [
        OrderLine(
            id=int(l["id"]),
            presentation_id=int(l["presentation_id"]),
            quantity_boxes=int(l["quantity_boxes"]),
            unit_price_box=float(l["unit_price_box"]),
            subtotal=float(l["subtotal"]),
            lot_code=l["lot_code"],
            expiry_date=l["expiry_date"],
            lot_id=int(l["lot_id"]) if l["lot_id"] is not None else None,
        )
        for l in q(conn, "SELECT * FROM purchase_order_lines WHERE purchase_order_id=? ORDER BY id", (int(order_id),))
    ]
    return PurchaseOrder(
        id=int(r["id"]),
        supplier_id=int(r["supplier_id"]),
        issued_on=str(r["issued_on"]),
        status=OrderStatus(r["status"]),
        subtotal=float(r["subtotal"]),
        discount=float(r["discount"]),
        tax_total=float(r["tax_total"]),
        total=float(r["total"]),
        currency=str(r["currency"]),
        notes=r["notes"],
        received_on=r["received_on"],
        lines=lines,
    )


def list_purchase_orders(conn, status: Optional[OrderStatus | str] = None):
    sql = """
        SELECT po.*, s.company_name AS supplier_name
        FROM purchase_orders po
        LEFT JOIN suppliers s ON s.id = po.supplier_id
    """
    params: tuple = ()
    if status is not None:
        sql += " WHERE po.status=?"
        params = (OrderStatus(status).value,)
    return q(conn, sql + " ORDER BY po.issued_on DESC, po.id DESC", params)


def reconcile_order_lines(conn, order_id: int, lines: list[OrderLineInput]) -> dict:
    """
    Apply an edited line list to an order as individual changes.

    Lines carrying an id update that row, lines without one are added, and
    stored lines absent from `lines` are removed. The order totals follow the
    new lines. Received and cancelled orders are frozen.
    """
    for i, line in enumerate(lines):
        _validate_line(line, i)

    counts = {"added": 0, "updated": 0, "removed": 0}
    with atomic(conn):
        order = get_purchase_order(conn, order_id)
        if order.status in (OrderStatus.RECEIVED, OrderStatus.CANCELLED):
            raise ImmutableRecordError("PurchaseOrder", order_id, f"order is {order.status.value}")

        current = {l.id: l for l in order.lines}
        ids = [int(l.id) for l in lines if l.id is not None]
        if len(ids) != len(set(ids)):
            raise ValidationError("An order line appears more than once.", field="id")
        incoming = {int(l.id): l for l in lines if l.id is not None}
        unknown = set(incoming) - set(current)
        if unknown:
            raise NotFoundError("PurchaseOrderLine", sorted(unknown)[0])

        for line_id in sorted(set(current) - set(incoming)):
            x(conn, "DELETE FROM purchase_order_lines WHERE id=?", (line_id,))
            counts["removed"] += 1

        for line_id, line in incoming.items():
            old = current[line_id]
            changed = (
                old.presentation_id != int(line.presentation_id)
                or old.quantity_boxes != int(line.quantity_boxes)
                or abs(old.unit_price_box - float(line.unit_price_box)) > 1e-9
                or old.lot_code != line.lot_code
                or old.expiry_date != line.expiry_date
            )
            if not changed:
                continue
            x(
                conn,
                """
                UPDATE purchase_order_lines SET
                    presentation_id=?, quantity_boxes=?, unit_price_box=?, subtotal=?,
                    lot_code=?, expiry_date=?
                WHERE id=?
                """,
                (
                    int(line.presentation_id),
                    int(line.quantity_boxes),
                    float(line.unit_price_box),
                    line.subtotal,
                    line.lot_code,
                    line.expiry_date,
                    line_id,
                ),
            )
            counts["updated"] += 1

        for line in lines:
            if line.id is None:
                _insert_line(conn, order_id, line)
                counts["added"] += 1

        _refresh_totals(conn, order_id)

    logger.info("Purchase order %s lines reconciled: %s", order_id, counts)
    return counts


def _refresh_totals(conn, order_id: int) -> float:
    r = q1(
        conn,
        "SELECT COALESCE(SUM(subtotal), 0) AS subtotal FROM purchase_order_lines WHERE purchase_order_id=?",
        (int(order_id),),
    )
    subtotal = money(r["subtotal"])
    x(
        conn,
        "UPDATE purchase_orders SET subtotal=?, total=MAX(0, ROUND(? - discount + tax_total, 2)) WHERE id=?",
        (subtotal, subtotal, int(order_id)),
    )
    return subtotal


def change_status(conn, order_id: int, status: OrderStatus | str, notes: Optional[str] = None) -> None:
    status = OrderStatus(status)
    with atomic(conn):
        order = get_purchase_order(conn, order_id)
        if status not in _TRANSITIONS[order.status]:
            raise ValidationError(
                f"Purchase order {order_id} cannot move from {order.status.value} to {status.value}.",
                field="status",
            )
        x(
            conn,
            "UPDATE purchase_orders SET status=?, notes=COALESCE(?, notes) WHERE id=?",
            (status.value, notes, int(order_id)),
        )
    logger.info("Purchase order %s: %s -> %s", order_id, order.status.value, status.value)
