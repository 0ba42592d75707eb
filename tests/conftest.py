"""
Shared fixtures: an in-memory store with schema and reference data, plus
small factories for the catalog, suppliers and stocked lots.
"""
import pytest

from pharmacy.config import MerchantConfig
from pharmacy.db import _connect, ensure_schema, x
from pharmacy.services.catalog import PresentationInput, create_presentation, create_product
from pharmacy.services.demo_data import upsert_reference_data
from pharmacy.services.ledger import MovementKind, apply_movement, upsert_lot


@pytest.fixture
def conn():
    c = _connect(":memory:")
    ensure_schema(c)
    upsert_reference_data(c)
    yield c
    c.close()


@pytest.fixture
def merchant():
    return MerchantConfig(
        ruc="1792146739001",
        business_name="FARMACIA PRUEBA S.A.",
        trade_name="FARMACIA PRUEBA",
        establishment="001",
        emission_point="001",
        head_office_address="Av. Amazonas N24-03, Quito",
        environment="1",
    )


@pytest.fixture
def make_presentation(conn):
    """Create a product with one presentation; returns the presentation id."""

    def _make(name="Paracetamol 500mg", *, units_per_box=10, vat_code="0", is_controlled=False, **kwargs):
        product_id = create_product(conn, commercial_name=name, vat_code=vat_code, is_controlled=is_controlled)
        return create_presentation(
            conn,
            product_id,
            PresentationInput(
                description=kwargs.pop("description", f"Caja x {units_per_box}"),
                units_per_box=units_per_box,
                unit_sale_price=kwargs.pop("unit_sale_price", 0.25),
                **kwargs,
            ),
        )

    return _make


@pytest.fixture
def supplier_id(conn):
    return x(
        conn,
        "INSERT INTO suppliers (company_name, ruc) VALUES (?, ?)",
        ("Distribuidora Andina", "1790011223001"),
    ).inserted_id


@pytest.fixture
def customer_id(conn):
    return x(
        conn,
        "INSERT INTO customers (document, full_name, address) VALUES (?, ?, ?)",
        ("1712345678", "María Pérez", "Quito"),
    ).inserted_id


@pytest.fixture
def stock_lot(conn):
    """Register a lot and put `quantity` units into it with a receipt movement."""

    def _stock(presentation_id, lot_code, expiry_date, quantity, unit_cost=0.10):
        lot = upsert_lot(conn, presentation_id, lot_code, expiry_date, unit_cost)
        if quantity:
            apply_movement(conn, lot.id, MovementKind.PURCHASE_RECEIPT, quantity, f"TEST-{lot_code}")
        return lot.id

    return _stock
