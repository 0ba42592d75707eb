import pytest

from pharmacy.errors import ImmutableRecordError, NotFoundError, ValidationError
from pharmacy.services.purchasing import (
    OrderLineInput,
    OrderStatus,
    change_status,
    create_purchase_order,
    get_purchase_order,
    list_purchase_orders,
    reconcile_order_lines,
)
from pharmacy.services.receiving import receive


def test_create_purchase_order_totals(conn, make_presentation, supplier_id):
    pid = make_presentation()
    order_id = create_purchase_order(
        conn,
        supplier_id=supplier_id,
        lines=[OrderLineInput(pid, 2, 4.50), OrderLineInput(pid, 1, 1.25)],
        issued_on="2025-01-10",
        discount=0.25,
        tax_total=0.0,
    )

    order = get_purchase_order(conn, order_id)
    assert order.status is OrderStatus.PENDING
    assert order.issued_on == "2025-01-10"
    assert order.subtotal == pytest.approx(10.25)
    assert order.total == pytest.approx(10.00)
    assert [l.subtotal for l in order.lines] == [9.00, 1.25]


def test_create_purchase_order_validation(conn, make_presentation, supplier_id):
    pid = make_presentation()
    with pytest.raises(ValidationError):
        create_purchase_order(conn, supplier_id=supplier_id, lines=[])
    with pytest.raises(ValidationError):
        create_purchase_order(conn, supplier_id=supplier_id, lines=[OrderLineInput(pid, 0, 1.0)])
    with pytest.raises(NotFoundError):
        create_purchase_order(conn, supplier_id=9999, lines=[OrderLineInput(pid, 1, 1.0)])
    with pytest.raises(NotFoundError):
        create_purchase_order(conn, supplier_id=supplier_id, lines=[OrderLineInput(9999, 1, 1.0)])
    assert list_purchase_orders(conn) == []


def test_reconcile_order_lines_applies_diff(conn, make_presentation, supplier_id):
    a, b, c = (make_presentation(n) for n in "ABC")
    order_id = create_purchase_order(
        conn,
        supplier_id=supplier_id,
        lines=[OrderLineInput(a, 1, 2.00), OrderLineInput(b, 1, 3.00)],
    )
    line_a, line_b = get_purchase_order(conn, order_id).lines

    counts = reconcile_order_lines(
        conn,
        order_id,
        [OrderLineInput(a, 5, 2.00, id=line_a.id), OrderLineInput(c, 2, 1.00)],
    )

    assert counts == {"added": 1, "updated": 1, "removed": 1}
    order = get_purchase_order(conn, order_id)
    assert [l.id for l in order.lines][0] == line_a.id
    assert line_b.id not in [l.id for l in order.lines]
    assert order.total == pytest.approx(12.00)


def test_reconcile_leaves_unchanged_lines_alone(conn, make_presentation, supplier_id):
    pid = make_presentation()
    order_id = create_purchase_order(conn, supplier_id=supplier_id, lines=[OrderLineInput(pid, 1, 2.00)])
    [line] = get_purchase_order(conn, order_id).lines

    counts = reconcile_order_lines(conn, order_id, [OrderLineInput(pid, 1, 2.00, id=line.id)])

    assert counts == {"added": 0, "updated": 0, "removed": 0}


def test_reconcile_rejects_foreign_line_ids(conn, make_presentation, supplier_id):
    pid = make_presentation()
    order_id = create_purchase_order(conn, supplier_id=supplier_id, lines=[OrderLineInput(pid, 1, 2.00)])

    with pytest.raises(NotFoundError):
        reconcile_order_lines(conn, order_id, [OrderLineInput(pid, 1, 2.00, id=9999)])


def test_reconcile_rejects_a_line_id_given_twice(conn, make_presentation, supplier_id):
    pid = make_presentation()
    order_id = create_purchase_order(conn, supplier_id=supplier_id, lines=[OrderLineInput(pid, 4, 2.00)])
    [line] = get_purchase_order(conn, order_id).lines

    with pytest.raises(ValidationError):
        reconcile_order_lines(
            conn,
            order_id,
            [OrderLineInput(pid, 2, 2.00, id=line.id), OrderLineInput(pid, 2, 2.00, id=line.id)],
        )

    assert [(l.id, l.quantity_boxes) for l in get_purchase_order(conn, order_id).lines] == [(line.id, 4)]


def test_received_order_is_frozen(conn, make_presentation, supplier_id):
    pid = make_presentation()
    order_id = create_purchase_order(
        conn,
        supplier_id=supplier_id,
        lines=[OrderLineInput(pid, 1, 2.00, lot_code="L", expiry_date="2030-01-31")],
    )
    receive(conn, order_id)

    with pytest.raises(ImmutableRecordError):
        reconcile_order_lines(conn, order_id, [])
    with pytest.raises(ValidationError):
        change_status(conn, order_id, OrderStatus.CANCELLED)


def test_status_transitions(conn, make_presentation, supplier_id):
    pid = make_presentation()
    order_id = create_purchase_order(
        conn, supplier_id=supplier_id, lines=[OrderLineInput(pid, 1, 2.00)], status=OrderStatus.DRAFT
    )

    change_status(conn, order_id, "pending")
    change_status(conn, order_id, OrderStatus.APPROVED, notes="Approved by pharmacist")
    order = get_purchase_order(conn, order_id)
    assert order.status is OrderStatus.APPROVED
    assert order.notes == "Approved by pharmacist"

    with pytest.raises(ValidationError):
        change_status(conn, order_id, OrderStatus.RECEIVED)
    assert [r["id"] for r in list_purchase_orders(conn, OrderStatus.APPROVED)] == [order_id]
