from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from pharmacy.db import atomic, q, q1, x
from pharmacy.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

VAT_CODES = {"0", "2", "6", "7"}


@dataclass(frozen=True)
class Product:
    id: int
    commercial_name: str
    vat_code: str
    is_controlled: bool
    requires_prescription: bool
    active_ingredient: Optional[str] = None
    category_id: Optional[int] = None
    laboratory_id: Optional[int] = None


@dataclass(frozen=True)
class Presentation:
    id: int
    product_id: int
    description: str
    base_unit: str
    units_per_box: int
    box_purchase_price: float
    unit_sale_price: float
    box_sale_price: float
    min_stock: int
    default_shelf_life_months: int
    barcode: Optional[str] = None


@dataclass
class PresentationInput:
    description: str
    units_per_box: int = 1
    base_unit: str = "unit"
    box_purchase_price: float = 0.0
    unit_sale_price: float = 0.0
    box_sale_price: float = 0.0
    min_stock: int = 0
    default_shelf_life_months: int = 24
    barcode: Optional[str] = None
    id: Optional[int] = None


def _presentation_from_row(r) -> Presentation:
    return Presentation(
        id=int(r["id"]),
        product_id=int(r["product_id"]),
        description=str(r["description"]),
        base_unit=str(r["base_unit"]),
        units_per_box=int(r["units_per_box"]),
        box_purchase_price=float(r["box_purchase_price"]),
        unit_sale_price=float(r["unit_sale_price"]),
        box_sale_price=float(r["box_sale_price"]),
        min_stock=int(r["min_stock"]),
        default_shelf_life_months=int(r["default_shelf_life_months"]),
        barcode=r["barcode"],
    )


def create_product(
    conn,
    *,
    commercial_name: str,
    vat_code: str = "0",
    active_ingredient: Optional[str] = None,
    category_id: Optional[int] = None,
    laboratory_id: Optional[int] = None,
    requires_prescription: bool = False,
    is_controlled: bool = False,
    internal_code: Optional[str] = None,
) -> int:
    name = str(commercial_name or "").strip()
    if not name:
        raise ValidationError("Commercial name is required.", field="commercial_name")
    if str(vat_code) not in VAT_CODES:
        raise ValidationError(f"Invalid VAT code {vat_code!r}.", field="vat_code")

    res = x(
        conn,
        """
        INSERT INTO products (
            internal_code, commercial_name, active_ingredient, laboratory_id, category_id,
            requires_prescription, is_controlled, vat_code
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            internal_code,
            name,
            active_ingredient,
            laboratory_id,
            category_id,
            1 if requires_prescription else 0,
            1 if is_controlled else 0,
            str(vat_code),
        ),
    )
    return res.inserted_id


def get_product(conn, product_id: int) -> Product:
    r = q1(conn, "SELECT * FROM products WHERE id=?", (int(product_id),))
    if r is None:
        raise NotFoundError("Product", product_id)
    return Product(
        id=int(r["id"]),
        commercial_name=str(r["commercial_name"]),
        vat_code=str(r["vat_code"]),
        is_controlled=bool(r["is_controlled"]),
        requires_prescription=bool(r["requires_prescription"]),
        active_ingredient=r["active_ingredient"],
        category_id=r["category_id"],
        laboratory_id=r["laboratory_id"],
    )


def _validate_presentation(p: PresentationInput) -> None:
    if not str(p.description or "").strip():
        raise ValidationError("Presentation description is required.", field="description")
    if int(p.units_per_box) < 1:
        raise ValidationError("Units per box must be >= 1.", field="units_per_box")
    for field in ("box_purchase_price", "unit_sale_price", "box_sale_price"):
        if float(getattr(p, field)) < 0:
            raise ValidationError(f"{field} must be >= 0.", field=field)
    if int(p.default_shelf_life_months) < 1:
        raise ValidationError("Default shelf life must be at least one month.", field="default_shelf_life_months")


def _presentation_params(p: PresentationInput) -> tuple:
    return (
        str(p.description).strip(),
        str(p.base_unit or "unit"),
        int(p.units_per_box),
        float(p.box_purchase_price),
        float(p.unit_sale_price),
        float(p.box_sale_price),
        int(p.min_stock),
        (p.barcode or None),
        int(p.default_shelf_life_months),
    )


def create_presentation(conn, product_id: int, presentation: PresentationInput) -> int:
    _validate_presentation(presentation)
    if q1(conn, "SELECT id FROM products WHERE id=?", (int(product_id),)) is None:
        raise NotFoundError("Product", product_id)
    res = x(
        conn,
        """
        INSERT INTO presentations (
            description, base_unit, units_per_box, box_purchase_price,
            unit_sale_price, box_sale_price, min_stock, barcode,
            default_shelf_life_months, product_id
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        _presentation_params(presentation) + (int(product_id),),
    )
    return res.inserted_id


def get_presentation(conn, presentation_id: int) -> Presentation:
    r = q1(conn, "SELECT * FROM presentations WHERE id=?", (int(presentation_id),))
    if r is None:
        raise NotFoundError("Presentation", presentation_id)
    return _presentation_from_row(r)


def list_presentations(conn, product_id: Optional[int] = None) -> list[Presentation]:
    if product_id is None:
        rows = q(conn, "SELECT * FROM presentations WHERE status='active' ORDER BY id")
    else:
        rows = q(
            conn,
            "SELECT * FROM presentations WHERE status='active' AND product_id=? ORDER BY id",
            (int(product_id),),
        )
    return [_presentation_from_row(r) for r in rows]


def save_presentations(conn, product_id: int, presentations: list[PresentationInput]) -> dict:
    """
    Bring a product's presentations in line with `presentations`.

    Rows are matched by id: known ids are updated in place, rows without id
    are inserted, missing ids are removed. A presentation that already has
    lots cannot be removed; one referenced only by purchase orders is
    deactivated instead of deleted.
    """
    for p in presentations:
        _validate_presentation(p)

    counts = {"added": 0, "updated": 0, "removed": 0, "deactivated": 0}
    with atomic(conn):
        if q1(conn, "SELECT id FROM products WHERE id=?", (int(product_id),)) is None:
            raise NotFoundError("Product", product_id)

        current = {
            int(r["id"])
            for r in q(conn, "SELECT id FROM presentations WHERE product_id=? AND status='active'", (int(product_id),))
        }
        incoming = {int(p.id) for p in presentations if p.id is not None}

        unknown = incoming - current
        if unknown:
            raise NotFoundError("Presentation", sorted(unknown)[0])

        for pid in sorted(current - incoming):
            if q1(conn, "SELECT 1 FROM lots WHERE presentation_id=? LIMIT 1", (pid,)):
                raise ValidationError(
                    f"Presentation {pid} has stock lots and cannot be removed.", field="presentations"
                )
            if q1(conn, "SELECT 1 FROM purchase_order_lines WHERE presentation_id=? LIMIT 1", (pid,)):
                x(conn, "UPDATE presentations SET status='inactive' WHERE id=?", (pid,))
                counts["deactivated"] += 1
            else:
                x(conn, "DELETE FROM presentations WHERE id=?", (pid,))
                counts["removed"] += 1

        for p in presentations:
            if p.id is None:
                create_presentation(conn, int(product_id), p)
                counts["added"] += 1
                continue
            before = get_presentation(conn, int(p.id))
            if before.units_per_box != int(p.units_per_box) and q1(
                conn, "SELECT 1 FROM lots WHERE presentation_id=? LIMIT 1", (int(p.id),)
            ):
                raise ValidationError(
                    f"Units per box of presentation {p.id} cannot change once lots exist.",
                    field="units_per_box",
                )
            x(
                conn,
                """
                UPDATE presentations SET
                    description=?, base_unit=?, units_per_box=?, box_purchase_price=?,
                    unit_sale_price=?, box_sale_price=?, min_stock=?, barcode=?,
                    default_shelf_life_months=?
                WHERE id=?
                """,
                _presentation_params(p) + (int(p.id),),
            )
            counts["updated"] += 1

    logger.info("Presentations for product %s reconciled: %s", product_id, counts)
    return counts
