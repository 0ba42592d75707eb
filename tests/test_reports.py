from pharmacy.services.ledger import adjust_stock
from pharmacy.services.reports import controlled_sales, expiring_lots, inventory_summary, kardex, low_stock
from pharmacy.services.sales import allocate, create_sale, finalize_sale


def test_inventory_summary_values_stock(conn, make_presentation, stock_lot):
    pid = make_presentation()
    stock_lot(pid, "LATE", "2024-12-31", 10, unit_cost=0.50)
    stock_lot(pid, "SOON", "2024-06-30", 4, unit_cost=0.25)
    stock_lot(pid, "EMPTY", "2024-08-31", 0)

    df = inventory_summary(conn, as_of="2024-06-01")

    assert list(df["lot_code"]) == ["SOON", "LATE"]
    assert list(df["days_to_expiry"]) == [29, 213]
    assert list(df["stock_value"]) == [1.0, 5.0]


def test_inventory_summary_empty_store(conn):
    df = inventory_summary(conn)
    assert df.empty
    assert "days_to_expiry" in df.columns


def test_expiring_lots_window(conn, make_presentation, stock_lot):
    pid = make_presentation()
    stock_lot(pid, "PAST", "2024-05-15", 1)
    stock_lot(pid, "SOON", "2024-06-20", 1)
    stock_lot(pid, "LATER", "2024-09-01", 1)

    df = expiring_lots(conn, within_days=30, as_of="2024-06-01")

    assert list(df["lot_code"]) == ["PAST", "SOON"]
    assert df.loc[0, "days_to_expiry"] < 0


def test_kardex_running_balance(conn, make_presentation, stock_lot):
    pid = make_presentation()
    lot_id = stock_lot(pid, "L1", "2030-01-31", 10)
    adjust_stock(conn, lot_id, -3, notes="Broken")
    adjust_stock(conn, lot_id, 1, notes="Recount")

    df = kardex(conn, lot_id)

    assert list(df["quantity"]) == [10, -3, 1]
    assert list(df["balance"]) == [10, 7, 8]
    assert list(df["kind"]) == ["purchase_receipt", "negative_adjustment", "positive_adjustment"]


def test_low_stock_uses_min_stock(conn, make_presentation, stock_lot):
    low = make_presentation("Low", min_stock=50)
    ok = make_presentation("Ok", min_stock=5)
    stock_lot(low, "A", "2030-01-31", 20)
    stock_lot(ok, "B", "2030-01-31", 20)

    df = low_stock(conn)

    assert list(df["presentation_id"]) == [low]
    assert list(df["stock_total"]) == [20]


def test_controlled_sales_lists_completed_controlled_lines(conn, make_presentation, stock_lot, merchant, customer_id):
    controlled = make_presentation("Clonazepam", is_controlled=True)
    regular = make_presentation("Paracetamol")
    c_lot = stock_lot(controlled, "C1", "2030-01-31", 30)
    r_lot = stock_lot(regular, "R1", "2030-01-31", 30)

    sale_id = create_sale(conn, customer_id=customer_id)
    allocate(conn, sale_id, c_lot, 2, 0.35)
    allocate(conn, sale_id, r_lot, 5, 0.10)
    finalize_sale(conn, sale_id, merchant, issued_on="2024-03-15")

    open_sale = create_sale(conn)
    allocate(conn, open_sale, c_lot, 1, 0.35)

    df = controlled_sales(conn, "2024-03-01", "2024-03-31")

    assert list(df["sale_id"]) == [sale_id]
    assert list(df["lot_code"]) == ["C1"]
    assert list(df["quantity"]) == [2]
    assert df.loc[0, "document"] == "1712345678"
    assert controlled_sales(conn, "2024-04-01", "2024-04-30").empty
