from __future__ import annotations

from datetime import timedelta
from typing import Optional

import pandas as pd

from pharmacy.db import q
from pharmacy.services.ledger import get_lot
from pharmacy.utils import DateLike, iso_today, parse_date


def _frame(rows, columns: list[str]) -> pd.DataFrame:
    if not rows:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([dict(r) for r in rows], columns=columns)


def inventory_summary(conn, as_of: Optional[DateLike] = None) -> pd.DataFrame:
    """One row per lot with stock: expiry, days left and valuation at cost."""
    today = parse_date(as_of or iso_today(), field="as_of")
    columns = [
        "lot_id", "product", "presentation", "lot_code", "expiry_date",
        "quantity_on_hand", "unit_purchase_cost", "stock_value", "days_to_expiry",
    ]
    rows = q(
        conn,
        """
        SELECT
          l.id AS lot_id,
          pr.commercial_name AS product,
          p.description AS presentation,
          l.lot_code,
          l.expiry_date,
          l.quantity_on_hand,
          ROUND(l.unit_purchase_cost, 4) AS unit_purchase_cost,
          ROUND(l.quantity_on_hand * l.unit_purchase_cost, 2) AS stock_value
        FROM lots l
        JOIN presentations p ON p.id = l.presentation_id
        JOIN products pr ON pr.id = p.product_id
        WHERE l.quantity_on_hand > 0
        ORDER BY l.expiry_date ASC, l.id ASC
        """,
    )
    df = _frame(rows, columns[:-1])
    df["days_to_expiry"] = pd.Series(
        [(parse_date(d) - today).days for d in df["expiry_date"]], index=df.index, dtype="int64"
    )
    return df[columns]


def kardex(conn, lot_id: int) -> pd.DataFrame:
    """Movement history of one lot with the running balance after each entry."""
    get_lot(conn, lot_id)
    columns = ["id", "moved_at", "kind", "reference", "quantity", "user_id", "notes"]
    rows = q(
        conn,
        f"SELECT {', '.join(columns)} FROM stock_movements WHERE lot_id=? ORDER BY id ASC",
        (int(lot_id),),
    )
    df = _frame(rows, columns)
    df["balance"] = df["quantity"].cumsum()
    return df


def expiring_lots(conn, within_days: int = 30, as_of: Optional[DateLike] = None) -> pd.DataFrame:
    today = parse_date(as_of or iso_today(), field="as_of")
    df = inventory_summary(conn, as_of=today)
    horizon = (today + timedelta(days=int(within_days))).isoformat()
    return df[df["expiry_date"] <= horizon].reset_index(drop=True)


def low_stock(conn) -> pd.DataFrame:
    """Active presentations whose total stock is at or below their minimum."""
    columns = ["presentation_id", "product", "presentation", "min_stock", "stock_total"]
    rows = q(
        conn,
        """
        SELECT
          p.id AS presentation_id,
          pr.commercial_name AS product,
          p.description AS presentation,
          p.min_stock,
          COALESCE(SUM(l.quantity_on_hand), 0) AS stock_total
        FROM presentations p
        JOIN products pr ON pr.id = p.product_id
        LEFT JOIN lots l ON l.presentation_id = p.id
        WHERE p.status='active' AND pr.status='active'
        GROUP BY p.id
        HAVING COALESCE(SUM(l.quantity_on_hand), 0) <= p.min_stock
        ORDER BY stock_total ASC, p.id ASC
        """,
    )
    return _frame(rows, columns)


def controlled_sales(conn, start: DateLike, end: DateLike) -> pd.DataFrame:
    """Lines of controlled medicines sold between two dates (ARCSA report)."""
    columns = [
        "sale_id", "sold_at", "customer", "document", "product",
        "presentation", "lot_code", "quantity",
    ]
    start_s = parse_date(start, field="start").isoformat()
    end_s = (parse_date(end, field="end") + timedelta(days=1)).isoformat()
    rows = q(
        conn,
        """
        SELECT
          s.id AS sale_id,
          s.sold_at,
          COALESCE(c.full_name, 'CONSUMIDOR FINAL') AS customer,
          c.document,
          pr.commercial_name AS product,
          p.description AS presentation,
          l.lot_code,
          sl.quantity
        FROM sale_lines sl
        JOIN sales s ON s.id = sl.sale_id
        JOIN lots l ON l.id = sl.lot_id
        JOIN presentations p ON p.id = l.presentation_id
        JOIN products pr ON pr.id = p.product_id
        LEFT JOIN customers c ON c.id = s.customer_id
        WHERE pr.is_controlled = 1
          AND s.status = 'completed'
          AND s.sold_at >= ? AND s.sold_at < ?
        ORDER BY s.sold_at ASC, sl.id ASC
        """,
        (start_s, end_s),
    )
    return _frame(rows, columns)
