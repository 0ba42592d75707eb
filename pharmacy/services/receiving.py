from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from pharmacy.db import atomic, q, x
from pharmacy.errors import MissingTraceabilityDataError, ValidationError
from pharmacy.services.catalog import Presentation, get_presentation
from pharmacy.services.ledger import MovementKind, apply_movement, as_quantity, upsert_lot
from pharmacy.services.purchasing import (
    RECEIVABLE,
    OrderLineInput,
    get_purchase_order,
    reconcile_order_lines,
)
from pharmacy.utils import DateLike, add_months, iso_today, money, parse_date, safe_div

logger = logging.getLogger(__name__)


@dataclass
class ReceivingLine:
    presentation_id: int
    quantity_boxes: int
    unit_price_box: float
    lot_code: Optional[str]
    expiry_date: Optional[str]
    order_line_id: Optional[int] = None  # None: line added at the dock


@dataclass(frozen=True)
class ReceivedLot:
    lot_id: int
    lot_code: str
    presentation_id: int
    quantity_base_units: int
    unit_cost_base_unit: float
    movement_id: int


@dataclass(frozen=True)
class ReceivingResult:
    purchase_order_id: int
    previous_total: float
    total: float
    lots: list[ReceivedLot]


def suggest_expiry_date(presentation: Presentation, received_on: Optional[DateLike] = None) -> str:
    """Prefill for the receiving form: receipt date plus the default shelf life."""
    base = parse_date(received_on or iso_today(), field="received_on")
    months = presentation.default_shelf_life_months or 24
    return add_months(base, months).isoformat()


def _check_line(line: ReceivingLine, idx: int) -> None:
    missing = []
    if not str(line.lot_code or "").strip():
        missing.append("lot_code")
    if not str(line.expiry_date or "").strip():
        missing.append("expiry_date")
    if missing:
        logger.warning("Receiving line %d rejected, missing %s", idx + 1, missing)
        raise MissingTraceabilityDataError(idx, line.presentation_id, missing)

    if as_quantity(line.quantity_boxes, field="quantity_boxes") <= 0:
        raise ValidationError(f"Line {idx + 1}: quantity must be > 0.", field="quantity_boxes")
    try:
        price = float(line.unit_price_box)
    except (TypeError, ValueError):
        raise ValidationError(f"Line {idx + 1}: unit price must be a number.", field="unit_price_box")
    if price < 0:
        raise ValidationError(f"Line {idx + 1}: unit price must be >= 0.", field="unit_price_box")
    parse_date(line.expiry_date, field="expiry_date")


def lines_from_order(conn, purchase_order_id: int) -> list[ReceivingLine]:
    order = get_purchase_order(conn, purchase_order_id)
    return [
        ReceivingLine(
            presentation_id=l.presentation_id,
            quantity_boxes=l.quantity_boxes,
            unit_price_box=l.unit_price_box,
            lot_code=l.lot_code,
            expiry_date=l.expiry_date,
            order_line_id=l.id,
        )
        for l in order.lines
    ]


def receive(
    conn,
    purchase_order_id: int,
    lines: Optional[list[ReceivingLine]] = None,
    *,
    user_id: Optional[int] = None,
    received_on: Optional[DateLike] = None,
) -> ReceivingResult:
    """
    Post the goods of a purchase order into stock.

    Each reconciled line becomes (or tops up) the lot for its lot code and
    gets one purchase-receipt movement in base units. The order lines are
    brought in line with what was actually received, the order total follows,
    and the order is marked received. Nothing is written if any line fails.

    When `lines` is omitted the order's own lines are received as recorded.
    """
    if lines is None:
        lines = lines_from_order(conn, purchase_order_id)
    if not lines:
        raise ValidationError("Nothing to receive.", field="lines")
    for i, line in enumerate(lines):
        _check_line(line, i)

    received = parse_date(received_on or iso_today(), field="received_on").isoformat()
    reference = f"PO-{int(purchase_order_id)}"
    out: list[ReceivedLot] = []

    with atomic(conn):
        order = get_purchase_order(conn, purchase_order_id)
        if order.status not in RECEIVABLE:
            raise ValidationError(
                f"Purchase order {purchase_order_id} is {order.status.value} and cannot be received.",
                field="status",
            )

        for line in lines:
            pres = get_presentation(conn, int(line.presentation_id))
            units_per_box = int(pres.units_per_box)
            qty_base = int(line.quantity_boxes) * units_per_box
            unit_cost = safe_div(float(line.unit_price_box), units_per_box)

            lot = upsert_lot(
                conn,
                pres.id,
                str(line.lot_code).strip(),
                line.expiry_date,
                unit_cost,
                box_purchase_cost=float(line.unit_price_box),
                received_date=received,
            )
            mov = apply_movement(
                conn,
                lot.id,
                MovementKind.PURCHASE_RECEIPT,
                qty_base,
                reference,
                user_id=user_id,
                notes=f"Receipt of purchase order #{int(purchase_order_id)}",
            )
            out.append(
                ReceivedLot(
                    lot_id=lot.id,
                    lot_code=lot.lot_code,
                    presentation_id=pres.id,
                    quantity_base_units=qty_base,
                    unit_cost_base_unit=unit_cost,
                    movement_id=mov.id,
                )
            )

        # An order line split across several lots keeps its id on the first
        # split; the others are stored as added lines.
        seen: set[int] = set()
        reconciled: list[OrderLineInput] = []
        for l in lines:
            line_id = l.order_line_id
            if line_id is not None:
                if int(line_id) in seen:
                    line_id = None
                else:
                    seen.add(int(line_id))
            reconciled.append(
                OrderLineInput(
                    presentation_id=int(l.presentation_id),
                    quantity_boxes=int(l.quantity_boxes),
                    unit_price_box=float(l.unit_price_box),
                    lot_code=str(l.lot_code).strip(),
                    expiry_date=parse_date(l.expiry_date).isoformat(),
                    id=line_id,
                )
            )
        reconcile_order_lines(conn, purchase_order_id, reconciled)
        lot_ids = {(r.presentation_id, r.lot_code): r.lot_id for r in out}
        for row in q(
            conn,
            "SELECT id, presentation_id, lot_code FROM purchase_order_lines WHERE purchase_order_id=?",
            (int(purchase_order_id),),
        ):
            lot_id = lot_ids.get((int(row["presentation_id"]), row["lot_code"]))
            x(conn, "UPDATE purchase_order_lines SET lot_id=? WHERE id=?", (lot_id, int(row["id"])))

        new_total = get_purchase_order(conn, purchase_order_id).total
        x(
            conn,
            "UPDATE purchase_orders SET status='received', received_on=? WHERE id=?",
            (received, int(purchase_order_id)),
        )

    if abs(money(new_total) - money(order.total)) > 0.005:
        logger.info("Purchase order %s total reconciled %.2f -> %.2f", purchase_order_id, order.total, new_total)
    logger.info("Received purchase order %s into %d lot(s)", purchase_order_id, len(out))
    return ReceivingResult(
        purchase_order_id=int(purchase_order_id),
        previous_total=float(order.total),
        total=float(new_total),
        lots=out,
    )
