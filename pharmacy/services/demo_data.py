from __future__ import annotations

import random
from datetime import date, timedelta

from pharmacy.config import MerchantConfig
from pharmacy.db import atomic, ensure_schema, q, x
from pharmacy.schema import DATA_TABLES
from pharmacy.services.catalog import PresentationInput, create_presentation, create_product
from pharmacy.services.purchasing import OrderLineInput, create_purchase_order
from pharmacy.services.receiving import receive
from pharmacy.services.sales import allocate_fefo, create_sale, finalize_sale

DEFAULT_CATEGORIES = ["Analgésicos", "Antibióticos", "Antiinflamatorios", "Vitaminas", "Dermatológicos", "Respiratorios"]
DEFAULT_LABORATORIES = [
    ("GENFAR", "Colombia"),
    ("PHARMABRAND", "Ecuador"),
    ("GRUPO DIFARE", "Ecuador"),
    ("BAYER", "Alemania"),
    ("PFIZER", "USA"),
    ("BAGÓ", "Argentina"),
]
DEFAULT_USERS = [("Admin Sistema", "admin"), ("Farmacéutico de turno", "pharmacist")]

# (name, ingredient, category, lab, vat_code, controlled, description, units/box, box cost, unit price)
DEMO_PRODUCTS = [
    ("Paracetamol 500mg", "Paracetamol", "Analgésicos", "GENFAR", "0", False, "Caja x 100 tabletas", 100, 4.50, 0.10),
    ("Ibuprofeno 400mg", "Ibuprofeno", "Antiinflamatorios", "BAYER", "0", False, "Caja x 50 tabletas", 50, 6.00, 0.20),
    ("Amoxicilina 500mg", "Amoxicilina", "Antibióticos", "PFIZER", "0", False, "Caja x 21 cápsulas", 21, 5.25, 0.40),
    ("Vitamina C 1g", "Ácido ascórbico", "Vitaminas", "PHARMABRAND", "2", False, "Tubo x 10 efervescentes", 10, 2.80, 0.45),
    ("Clonazepam 2mg", "Clonazepam", "Respiratorios", "BAGÓ", "0", True, "Caja x 30 tabletas", 30, 7.20, 0.35),
]


def upsert_reference_data(conn) -> None:
    ensure_schema(conn)

    with atomic(conn):
        for name in DEFAULT_CATEGORIES:
            x(conn, "INSERT OR IGNORE INTO categories(name) VALUES (?)", (name,))
        for name, country in DEFAULT_LABORATORIES:
            x(conn, "INSERT OR IGNORE INTO laboratories(name, country) VALUES (?, ?)", (name, country))
        if not q(conn, "SELECT id FROM users LIMIT 1"):
            for name, role in DEFAULT_USERS:
                x(conn, "INSERT INTO users(name, role) VALUES (?, ?)", (name, role))


def wipe_all(conn) -> None:
    # DROP skips the append-only triggers; ensure_schema recreates the table.
    conn.execute("DROP TABLE IF EXISTS stock_movements;")
    with atomic(conn):
        for t in DATA_TABLES:
            conn.execute(f"DELETE FROM {t};")
    ensure_schema(conn)


def load_demo_data(conn, *, seed: int = 7) -> None:
    random.seed(seed)
    upsert_reference_data(conn)

    categories = {r["name"]: int(r["id"]) for r in q(conn, "SELECT id, name FROM categories")}
    labs = {r["name"]: int(r["id"]) for r in q(conn, "SELECT id, name FROM laboratories")}

    with atomic(conn):
        supplier_id = x(
            conn,
            "INSERT INTO suppliers (company_name, ruc, contact_name) VALUES (?, ?, ?)",
            ("Distribuidora Demo", f"17{random.randint(10**10, 10**11 - 1)}", "Ventas"),
        ).inserted_id
        x(
            conn,
            "INSERT OR IGNORE INTO customers (document, full_name, address) VALUES (?, ?, ?)",
            ("1712345678", "Cliente Demo", "Quito"),
        )

        presentation_ids = []
        for name, ingredient, cat, lab, vat, controlled, desc, units, box_cost, unit_price in DEMO_PRODUCTS:
            product_id = create_product(
                conn,
                commercial_name=name,
                active_ingredient=ingredient,
                category_id=categories.get(cat),
                laboratory_id=labs.get(lab),
                vat_code=vat,
                is_controlled=controlled,
                requires_prescription=controlled,
            )
            presentation_ids.append(
                (
                    create_presentation(
                        conn,
                        product_id,
                        PresentationInput(
                            description=desc,
                            units_per_box=units,
                            base_unit="unidad",
                            box_purchase_price=box_cost,
                            unit_sale_price=unit_price,
                            box_sale_price=round(unit_price * units * 0.95, 2),
                            min_stock=units,
                        ),
                    ),
                    box_cost,
                    unit_price,
                )
            )

    # Two receipts per presentation with different expiries so FEFO has a choice.
    today = date.today()
    for round_no in range(2):
        lines = []
        for pid, box_cost, _ in presentation_ids:
            expiry = today + timedelta(days=random.randint(60, 200) + 180 * round_no)
            lines.append(
                OrderLineInput(
                    presentation_id=pid,
                    quantity_boxes=random.randint(2, 6),
                    unit_price_box=box_cost,
                    lot_code=f"L{today:%y%m}{round_no + 1}{pid:03d}",
                    expiry_date=expiry.isoformat(),
                )
            )
        order_id = create_purchase_order(conn, supplier_id=supplier_id, lines=lines)
        receive(conn, order_id)

    merchant = MerchantConfig()
    customer_id = int(q(conn, "SELECT id FROM customers WHERE document=?", ("1712345678",))[0]["id"])
    # The controlled product goes to a named customer for the ARCSA report.
    for pid, _, unit_price in presentation_ids[:3] + presentation_ids[4:5]:
        controlled = pid == presentation_ids[4][0]
        sale_id = create_sale(
            conn,
            customer_id=customer_id if controlled else None,
            payment_method=random.choice(["cash", "card", "transfer"]),
        )
        allocate_fefo(conn, sale_id, pid, random.randint(5, 20), unit_price)
        finalize_sale(conn, sale_id, merchant)
