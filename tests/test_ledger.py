"""
Lot ledger: on-hand always equals the sum of recorded movements and never
goes negative; the movement history is append-only.
"""
import sqlite3
import threading

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from pharmacy.db import _connect, ensure_schema, q, x
from pharmacy.errors import InsufficientStockError, NotFoundError, ValidationError
from pharmacy.services.catalog import PresentationInput, create_presentation, create_product
from pharmacy.services.ledger import (
    MovementKind,
    adjust_stock,
    apply_movement,
    get_lot,
    list_lots,
    list_movements,
    movement_balance,
    reconcile,
    upsert_lot,
    write_off_expired,
)


def test_movement_kind_signs():
    assert MovementKind.PURCHASE_RECEIPT.sign == 1
    assert MovementKind.RETURN.sign == 1
    assert MovementKind.POSITIVE_ADJUSTMENT.sign == 1
    assert MovementKind.SALE_ISSUE.sign == -1
    assert MovementKind.NEGATIVE_ADJUSTMENT.sign == -1
    assert MovementKind.EXPIRY_WRITEOFF.sign == -1


def test_upsert_lot_creates_empty_lot(conn, make_presentation):
    pid = make_presentation()
    lot = upsert_lot(conn, pid, " L-001 ", "2027-01-31", 0.12)

    assert lot.lot_code == "L-001"
    assert lot.expiry_date == "2027-01-31"
    assert lot.quantity_on_hand == 0
    assert list_movements(conn, lot.id) == []


def test_upsert_lot_reuses_existing_and_refreshes_cost(conn, make_presentation):
    pid = make_presentation()
    first = upsert_lot(conn, pid, "L-001", "2027-01-31", 0.12)
    second = upsert_lot(conn, pid, "L-001", "2027-01-31", 0.15)

    assert second.id == first.id
    assert second.unit_purchase_cost == pytest.approx(0.15)
    assert len(list_lots(conn, pid)) == 1


def test_upsert_lot_keeps_recorded_expiry_on_repeat(conn, make_presentation):
    pid = make_presentation()
    first = upsert_lot(conn, pid, "L-001", "2027-01-31", 0.12)

    again = upsert_lot(conn, pid, "L-001", "2027-06-30", 0.15)

    assert again.id == first.id
    assert again.expiry_date == "2027-01-31"
    assert again.unit_purchase_cost == pytest.approx(0.15)
    assert len(list_lots(conn)) == 1


def test_upsert_lot_requires_code_and_known_presentation(conn, make_presentation):
    pid = make_presentation()
    with pytest.raises(ValidationError):
        upsert_lot(conn, pid, "  ", "2027-01-31", 0.12)
    with pytest.raises(NotFoundError):
        upsert_lot(conn, 9999, "L-1", "2027-01-31", 0.12)


def test_apply_movement_updates_on_hand_and_records_entry(conn, make_presentation):
    pid = make_presentation()
    lot = upsert_lot(conn, pid, "L-001", "2027-01-31", 0.12)

    mov = apply_movement(conn, lot.id, MovementKind.PURCHASE_RECEIPT, 100, "PO-1", user_id=1)

    assert mov.quantity == 100
    assert mov.kind is MovementKind.PURCHASE_RECEIPT
    assert get_lot(conn, lot.id).quantity_on_hand == 100
    assert [m.reference for m in list_movements(conn, lot.id)] == ["PO-1"]


def test_apply_movement_rejects_sign_mismatch(conn, make_presentation):
    pid = make_presentation()
    lot = upsert_lot(conn, pid, "L-001", "2027-01-31", 0.12)

    with pytest.raises(ValidationError):
        apply_movement(conn, lot.id, MovementKind.PURCHASE_RECEIPT, -5, "PO-1")
    with pytest.raises(ValidationError):
        apply_movement(conn, lot.id, MovementKind.SALE_ISSUE, 5, "SALE-1")
    with pytest.raises(ValidationError):
        apply_movement(conn, lot.id, MovementKind.PURCHASE_RECEIPT, 0, "PO-1")


def test_apply_movement_requires_reference(conn, make_presentation):
    pid = make_presentation()
    lot = upsert_lot(conn, pid, "L-001", "2027-01-31", 0.12)

    with pytest.raises(ValidationError) as exc:
        apply_movement(conn, lot.id, MovementKind.PURCHASE_RECEIPT, 5, "")
    assert exc.value.field == "reference"


def test_apply_movement_rejects_fractional_units(conn, make_presentation):
    pid = make_presentation()
    lot = upsert_lot(conn, pid, "L-001", "2027-01-31", 0.12)

    with pytest.raises(ValidationError):
        apply_movement(conn, lot.id, MovementKind.PURCHASE_RECEIPT, 2.5, "PO-1")


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf"), "nan"])
def test_apply_movement_rejects_non_finite_quantities(conn, make_presentation, bad):
    pid = make_presentation()
    lot = upsert_lot(conn, pid, "L-001", "2027-01-31", 0.12)

    with pytest.raises(ValidationError) as exc:
        apply_movement(conn, lot.id, MovementKind.PURCHASE_RECEIPT, bad, "PO-1")
    assert exc.value.field == "quantity"
    assert list_movements(conn, lot.id) == []


def test_overdraw_leaves_lot_and_history_unchanged(conn, make_presentation, stock_lot):
    pid = make_presentation()
    lot_id = stock_lot(pid, "L-001", "2027-01-31", 10)

    with pytest.raises(InsufficientStockError) as exc:
        apply_movement(conn, lot_id, MovementKind.SALE_ISSUE, -11, "SALE-1")

    assert exc.value.code == "INSUFFICIENT_STOCK"
    assert exc.value.lot_id == lot_id
    assert exc.value.on_hand == 10
    assert exc.value.requested == 11
    assert get_lot(conn, lot_id).quantity_on_hand == 10
    assert len(list_movements(conn, lot_id)) == 1


def test_unknown_lot_raises_not_found(conn):
    with pytest.raises(NotFoundError):
        apply_movement(conn, 424242, MovementKind.PURCHASE_RECEIPT, 1, "PO-1")


def test_movements_cannot_be_updated_or_deleted(conn, make_presentation, stock_lot):
    pid = make_presentation()
    lot_id = stock_lot(pid, "L-001", "2027-01-31", 10)

    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        x(conn, "UPDATE stock_movements SET quantity=999 WHERE lot_id=?", (lot_id,))
    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        x(conn, "DELETE FROM stock_movements WHERE lot_id=?", (lot_id,))
    assert movement_balance(conn, lot_id) == 10


def test_lot_quantity_cannot_go_negative_in_store(conn, make_presentation, stock_lot):
    pid = make_presentation()
    lot_id = stock_lot(pid, "L-001", "2027-01-31", 3)

    with pytest.raises(sqlite3.IntegrityError):
        x(conn, "UPDATE lots SET quantity_on_hand = -1 WHERE id=?", (lot_id,))


def test_adjust_stock_needs_reason_and_posts_adjustment(conn, make_presentation, stock_lot):
    pid = make_presentation()
    lot_id = stock_lot(pid, "L-001", "2027-01-31", 20)

    with pytest.raises(ValidationError):
        adjust_stock(conn, lot_id, -2, notes="")

    mov = adjust_stock(conn, lot_id, -2, notes="Broken blister")
    assert mov.kind is MovementKind.NEGATIVE_ADJUSTMENT
    assert mov.reference == f"ADJ-{lot_id}"

    mov = adjust_stock(conn, lot_id, 1, notes="Stocktake found one")
    assert mov.kind is MovementKind.POSITIVE_ADJUSTMENT
    assert get_lot(conn, lot_id).quantity_on_hand == 19


def test_adjust_stock_rejects_document_kinds(conn, make_presentation, stock_lot):
    pid = make_presentation()
    lot_id = stock_lot(pid, "L-001", "2027-01-31", 20)

    with pytest.raises(ValidationError):
        adjust_stock(conn, lot_id, -1, notes="x", kind=MovementKind.SALE_ISSUE)


def test_write_off_expired_zeroes_only_expired_lots(conn, make_presentation, stock_lot):
    pid = make_presentation()
    old = stock_lot(pid, "OLD", "2024-01-31", 7)
    fresh = stock_lot(pid, "NEW", "2024-12-31", 9)

    moves = write_off_expired(conn, as_of="2024-06-01")

    assert [m.lot_id for m in moves] == [old]
    assert moves[0].quantity == -7
    assert moves[0].reference == "EXP-2024-06-01"
    assert get_lot(conn, old).quantity_on_hand == 0
    assert get_lot(conn, fresh).quantity_on_hand == 9


def test_reconcile_reports_tampered_cache(conn, make_presentation, stock_lot):
    pid = make_presentation()
    lot_id = stock_lot(pid, "L-001", "2027-01-31", 10)
    assert reconcile(conn) == []

    x(conn, "UPDATE lots SET quantity_on_hand = 4 WHERE id=?", (lot_id,))

    [d] = reconcile(conn)
    assert (d.lot_id, d.cached_quantity, d.movement_sum) == (lot_id, 4, 10)


_ops = st.lists(
    st.tuples(
        st.sampled_from(list(MovementKind)),
        st.integers(min_value=1, max_value=60),
    ),
    min_size=1,
    max_size=40,
)


@settings(max_examples=60, deadline=None)
@given(ops=_ops)
def test_on_hand_equals_movement_sum_and_never_negative(ops):
    c = _connect(":memory:")
    ensure_schema(c)
    product_id = create_product(c, commercial_name="Prop")
    pid = create_presentation(c, product_id, PresentationInput(description="Unit"))
    lot = upsert_lot(c, pid, "P-1", "2030-01-01", 1.0)

    for kind, n in ops:
        try:
            apply_movement(c, lot.id, kind, kind.sign * n, "PROP")
        except InsufficientStockError:
            pass
        on_hand = get_lot(c, lot.id).quantity_on_hand
        assert on_hand >= 0
        assert on_hand == movement_balance(c, lot.id)

    rows = q(c, "SELECT COUNT(*) AS n FROM stock_movements WHERE quantity = 0")
    assert rows[0]["n"] == 0
    c.close()


def test_concurrent_issues_from_separate_connections_never_overdraw(tmp_path):
    path = tmp_path / "pharmacy.db"
    setup = _connect(path)
    ensure_schema(setup)
    product_id = create_product(setup, commercial_name="Race")
    pid = create_presentation(setup, product_id, PresentationInput(description="Unit"))
    lot = upsert_lot(setup, pid, "R-1", "2030-01-01", 1.0)
    apply_movement(setup, lot.id, MovementKind.PURCHASE_RECEIPT, 10, "PO-RACE")

    workers = 4
    barrier = threading.Barrier(workers)
    outcomes: list[str] = []
    lock = threading.Lock()

    def issue(n):
        c = _connect(path)
        try:
            barrier.wait()
            try:
                apply_movement(c, lot.id, MovementKind.SALE_ISSUE, -7, f"SALE-{n}")
                result = "ok"
            except InsufficientStockError:
                result = "short"
        finally:
            c.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=issue, args=(n,)) for n in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["ok", "short", "short", "short"]
    assert get_lot(setup, lot.id).quantity_on_hand == 3
    assert movement_balance(setup, lot.id) == 3
    assert reconcile(setup) == []
    setup.close()


def test_ensure_schema_is_idempotent_and_keeps_data(conn, make_presentation, stock_lot):
    pid = make_presentation()
    lot_id = stock_lot(pid, "L-001", "2027-01-31", 10)

    ensure_schema(conn)
    ensure_schema(conn)

    assert get_lot(conn, lot_id).quantity_on_hand == 10
    assert len(list_movements(conn, lot_id)) == 1
    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        x(conn, "DELETE FROM stock_movements")
