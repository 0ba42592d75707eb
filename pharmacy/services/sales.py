from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Optional

from pharmacy.config import MerchantConfig
from pharmacy.db import atomic, q, q1, x
from pharmacy.errors import ImmutableRecordError, InsufficientStockError, NotFoundError, ValidationError
from pharmacy.services.ledger import Lot, MovementKind, apply_movement, as_quantity, get_lot, lot_from_row
from pharmacy.services.sri import DOC_INVOICE, PAYMENT_CODES, generate_access_key, render_invoice, tax_buckets
from pharmacy.utils import DateLike, iso_now_local, iso_today, money, parse_date

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SaleLine:
    id: int
    sale_id: int
    lot_id: int
    quantity: int
    unit_price: float
    subtotal: float
    vat_code: str
    presentation_id: Optional[int] = None
    description: Optional[str] = None
    lot_code: Optional[str] = None


@dataclass(frozen=True)
class Sale:
    id: int
    sold_at: str
    status: str
    payment_method: str
    subtotal: float
    tax_total: float
    total: float
    customer_id: Optional[int] = None
    cashier_id: Optional[int] = None
    access_key: Optional[str] = None
    sri_status: str = "pending"
    xml_document: Optional[str] = None
    lines: list[SaleLine] = field(default_factory=list)


@dataclass(frozen=True)
class Customer:
    id: int
    full_name: str
    document: Optional[str] = None
    address: Optional[str] = None


def _line_from_row(r) -> SaleLine:
    return SaleLine(
        id=int(r["id"]),
        sale_id=int(r["sale_id"]),
        lot_id=int(r["lot_id"]),
        quantity=int(r["quantity"]),
        unit_price=float(r["unit_price"]),
        subtotal=float(r["subtotal"]),
        vat_code=str(r["vat_code"]),
        presentation_id=int(r["presentation_id"]),
        description=r["description"],
        lot_code=r["lot_code"],
    )


def get_sale(conn, sale_id: int) -> Sale:
    r = q1(conn, "SELECT * FROM sales WHERE id=?", (int(sale_id),))
    if r is None:
        raise NotFoundError("Sale", sale_id)
    lines = q(
        conn,
        """
        SELECT sl.*, l.presentation_id, l.lot_code,
               pr.commercial_name || ' - ' || p.description AS description
        FROM sale_lines sl
        JOIN lots l ON l.id = sl.lot_id
        JOIN presentations p ON p.id = l.presentation_id
        JOIN products pr ON pr.id = p.product_id
        WHERE sl.sale_id=?
        ORDER BY sl.id
        """,
        (int(sale_id),),
    )
    return Sale(
        id=int(r["id"]),
        sold_at=str(r["sold_at"]),
        status=str(r["status"]),
        payment_method=str(r["payment_method"]),
        subtotal=float(r["subtotal"]),
        tax_total=float(r["tax_total"]),
        total=float(r["total"]),
        customer_id=r["customer_id"],
        cashier_id=r["cashier_id"],
        access_key=r["access_key"],
        sri_status=str(r["sri_status"]),
        xml_document=r["xml_document"],
        lines=[_line_from_row(l) for l in lines],
    )


def get_customer(conn, customer_id: int) -> Customer:
    r = q1(conn, "SELECT * FROM customers WHERE id=?", (int(customer_id),))
    if r is None:
        raise NotFoundError("Customer", customer_id)
    return Customer(id=int(r["id"]), full_name=str(r["full_name"]), document=r["document"], address=r["address"])


def list_available_lots(conn, presentation_id: int, as_of: Optional[DateLike] = None) -> list[Lot]:
    """
    FEFO candidates: lots with stock that have not expired, soonest expiry
    first. Each call re-reads the store.
    """
    if q1(conn, "SELECT id FROM presentations WHERE id=?", (int(presentation_id),)) is None:
        raise NotFoundError("Presentation", presentation_id)
    today = parse_date(as_of or iso_today(), field="as_of").isoformat()
    rows = q(
        conn,
        """
        SELECT * FROM lots
        WHERE presentation_id=? AND quantity_on_hand > 0 AND expiry_date >= ?
        ORDER BY expiry_date ASC, id ASC
        """,
        (int(presentation_id), today),
    )
    return [lot_from_row(r) for r in rows]


def create_sale(
    conn,
    *,
    customer_id: Optional[int] = None,
    cashier_id: Optional[int] = None,
    payment_method: str = "cash",
) -> int:
    method = str(payment_method or "").strip().lower()
    if method not in PAYMENT_CODES:
        raise ValidationError(
            f"Unknown payment method {payment_method!r}. Use one of: {', '.join(PAYMENT_CODES)}.",
            field="payment_method",
        )
    if customer_id is not None:
        get_customer(conn, int(customer_id))
    res = x(
        conn,
        "INSERT INTO sales (customer_id, cashier_id, sold_at, payment_method, status) VALUES (?, ?, ?, ?, 'open')",
        (customer_id, cashier_id, iso_now_local(), method),
    )
    return res.inserted_id


def _open_sale(conn, sale_id: int):
    r = q1(conn, "SELECT status FROM sales WHERE id=?", (int(sale_id),))
    if r is None:
        raise NotFoundError("Sale", sale_id)
    if r["status"] != "open":
        raise ImmutableRecordError("Sale", sale_id, f"sale is {r['status']}")
    return r


def allocate(
    conn,
    sale_id: int,
    lot_id: int,
    quantity: int,
    unit_price: float,
    *,
    user_id: Optional[int] = None,
    as_of: Optional[DateLike] = None,
) -> SaleLine:
    """
    Sell `quantity` base units from one chosen lot.

    The line always points at that single lot; covering a request from a
    second lot is the caller's job (see allocate_fefo).
    """
    qty = as_quantity(quantity)
    if qty <= 0:
        raise ValidationError("Quantity must be > 0.", field="quantity")
    try:
        price = float(unit_price)
    except (TypeError, ValueError):
        raise ValidationError("Unit price must be a number.", field="unit_price")
    if price <= 0:
        raise ValidationError("Unit price must be > 0.", field="unit_price")
    today = parse_date(as_of or iso_today(), field="as_of").isoformat()

    with atomic(conn):
        _open_sale(conn, sale_id)
        lot = get_lot(conn, lot_id)
        if lot.expiry_date < today:
            raise ValidationError(f"Lot {lot.lot_code} expired on {lot.expiry_date}.", field="lot_id")
        if qty > lot.quantity_on_hand:
            logger.warning("Sale %s: lot %s has %s, requested %s", sale_id, lot.id, lot.quantity_on_hand, qty)
            raise InsufficientStockError(lot.id, lot.quantity_on_hand, qty)

        vat = q1(
            conn,
            """
            SELECT pr.vat_code FROM presentations p
            JOIN products pr ON pr.id = p.product_id
            WHERE p.id=?
            """,
            (lot.presentation_id,),
        )
        subtotal = money(qty * price)
        res = x(
            conn,
            "INSERT INTO sale_lines (sale_id, lot_id, quantity, unit_price, subtotal, vat_code) VALUES (?, ?, ?, ?, ?, ?)",
            (int(sale_id), lot.id, qty, price, subtotal, str(vat["vat_code"])),
        )
        apply_movement(
            conn,
            lot.id,
            MovementKind.SALE_ISSUE,
            -qty,
            f"SALE-{int(sale_id)}",
            user_id=user_id,
            notes=f"Sale #{int(sale_id)}",
        )

    return SaleLine(
        id=res.inserted_id,
        sale_id=int(sale_id),
        lot_id=lot.id,
        quantity=qty,
        unit_price=price,
        subtotal=subtotal,
        vat_code=str(vat["vat_code"]),
        presentation_id=lot.presentation_id,
        lot_code=lot.lot_code,
    )


def allocate_fefo(
    conn,
    sale_id: int,
    presentation_id: int,
    quantity: int,
    unit_price: float,
    *,
    user_id: Optional[int] = None,
    as_of: Optional[DateLike] = None,
) -> list[SaleLine]:
    """
    Cover `quantity` from the soonest-expiring lots, one sale line per lot.
    Fails without selling anything when the lots together fall short.
    """
    qty = as_quantity(quantity)
    if qty <= 0:
        raise ValidationError("Quantity must be > 0.", field="quantity")

    out: list[SaleLine] = []
    with atomic(conn):
        lots = list_available_lots(conn, presentation_id, as_of)
        available = sum(l.quantity_on_hand for l in lots)
        if available < qty:
            raise InsufficientStockError(None, available, qty, presentation_id=presentation_id)

        remaining = qty
        for lot in lots:
            if remaining <= 0:
                break
            take = min(remaining, lot.quantity_on_hand)
            out.append(allocate(conn, sale_id, lot.id, take, unit_price, user_id=user_id, as_of=as_of))
            remaining -= take
    return out


def finalize_sale(
    conn,
    sale_id: int,
    merchant: MerchantConfig,
    *,
    issued_on: Optional[DateLike] = None,
    vat_rate: float = 0.15,
) -> Sale:
    """
    Close a sale: totals per VAT bucket, access key and invoice XML.

    The key is derived once (sequential = sale id) and stored for good; a
    second call returns the stored sale untouched.
    """
    with atomic(conn):
        sale = get_sale(conn, sale_id)
        if sale.access_key:
            return sale
        if sale.status != "open":
            raise ImmutableRecordError("Sale", sale_id, f"sale is {sale.status}")
        if not sale.lines:
            raise ValidationError(f"Sale {sale_id} has no lines.", field="lines")

        buckets = tax_buckets(sale.lines, vat_rate)
        subtotal = money(sum(b.base for b in buckets))
        tax_total = money(sum(b.tax for b in buckets))
        total = money(subtotal + tax_total)
        sold_at = parse_date(issued_on).isoformat() if issued_on else sale.sold_at

        key = generate_access_key(sold_at, DOC_INVOICE, sale.id, merchant)
        closed = replace(
            sale,
            sold_at=sold_at,
            status="completed",
            subtotal=subtotal,
            tax_total=tax_total,
            total=total,
            access_key=key,
        )
        customer = get_customer(conn, sale.customer_id) if sale.customer_id is not None else None
        xml_document = render_invoice(closed, merchant, customer, general_rate=vat_rate)

        x(
            conn,
            """
            UPDATE sales SET
                sold_at=?, status='completed', subtotal=?, tax_total=?, total=?,
                access_key=?, xml_document=?
            WHERE id=?
            """,
            (sold_at, subtotal, tax_total, total, key, xml_document, int(sale_id)),
        )

    logger.info("Sale %s finalized, total %.2f, access key %s", sale_id, total, key)
    return replace(closed, xml_document=xml_document)


def void_sale(conn, sale_id: int, *, user_id: Optional[int] = None, notes: Optional[str] = None) -> Sale:
    """Put every line's units back into its lot and mark the sale voided."""
    with atomic(conn):
        sale = get_sale(conn, sale_id)
        if sale.status == "voided":
            raise ImmutableRecordError("Sale", sale_id, "sale is already voided")
        for line in sale.lines:
            apply_movement(
                conn,
                line.lot_id,
                MovementKind.RETURN,
                line.quantity,
                f"VOID-{int(sale_id)}",
                user_id=user_id,
                notes=notes or f"Void of sale #{int(sale_id)}",
            )
        x(conn, "UPDATE sales SET status='voided' WHERE id=?", (int(sale_id),))

    logger.info("Sale %s voided, %d line(s) returned to stock", sale_id, len(sale.lines))
    return get_sale(conn, sale_id)


def register_sale(
    conn,
    items: list[tuple[int, int, float]],
    merchant: MerchantConfig,
    *,
    customer_id: Optional[int] = None,
    cashier_id: Optional[int] = None,
    payment_method: str = "cash",
    vat_rate: float = 0.15,
) -> Sale:
    """
    Point-of-sale checkout in one transaction. `items` are
    (lot_id, quantity, unit_price) tuples, one per cart line.
    """
    if not items:
        raise ValidationError("The cart is empty.", field="items")
    with atomic(conn):
        sale_id = create_sale(conn, customer_id=customer_id, cashier_id=cashier_id, payment_method=payment_method)
        for lot_id, quantity, unit_price in items:
            allocate(conn, sale_id, lot_id, quantity, unit_price, user_id=cashier_id)
        return finalize_sale(conn, sale_id, merchant, vat_rate=vat_rate)
