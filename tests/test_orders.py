from datetime import datetime, timezone
from decimal import Decimal

import pytest

from crm_core.core.errors import NotFoundError, ValidationError
from crm_core.core.id_utils import generate_id
from crm_core.models.order import Order
from crm_core.services import order_service

SHIPPING = {
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "zip_code": "560001",
    "country": "India",
}


def _create(db, customer, *, items=None, payment_method="upi"):
    return order_service.create_order(
        db,
        customer_id=customer.id,
        items=items or [{"name": "Cotton Kurta", "quantity": 2, "price": 799.5}],
        shipping_address=SHIPPING,
        payment_method=payment_method,
    )


def test_create_order_computes_total_and_numbers_sequentially(db, make_customer):
    customer = make_customer()

    first = _create(db, customer, items=[{"name": "Kurta", "quantity": 2, "price": 799.5}, {"name": "Scarf", "quantity": 1, "price": 150}])
    second = _create(db, customer)

    assert first.total_amount == Decimal("1749.00")
    assert first.status == "pending"
    assert first.payment_status == "pending"
    assert first.order_number == "ORD000001"
    assert second.order_number == "ORD000002"
    items = order_service.items_by_order(db, [first.id])[first.id]
    assert [(item.name, item.line_total) for item in items] == [("Kurta", Decimal("1599.00")), ("Scarf", Decimal("150.00"))]


def test_order_number_keeps_counting_past_width_boundaries(db, make_customer):
    customer = make_customer()
    db.add(
        Order(
            id=generate_id(),
            order_number="ORD000009",
            customer_id=customer.id,
            payment_method="cash",
            total_amount=Decimal("10.00"),
            shipping_address_json=SHIPPING,
            created_at=datetime.now(timezone.utc),
        )
    )
    db.commit()

    assert _create(db, customer).order_number == "ORD000010"
    assert _create(db, customer).order_number == "ORD000011"


def test_create_order_updates_customer_aggregates(db, make_customer):
    customer = make_customer()

    _create(db, customer, items=[{"name": "Tea", "quantity": 3, "price": 40}])
    _create(db, customer, items=[{"name": "Coffee", "quantity": 1, "price": 80}])
    db.refresh(customer)

    assert customer.total_purchases == 2
    assert customer.total_spend == Decimal("200.00")
    assert customer.last_purchase is not None
    history = customer.purchase_history_json
    assert [(entry["product_name"], entry["amount"]) for entry in history] == [("Tea", 120.0), ("Coffee", 80.0)]
    assert all(entry["purchase_date"] for entry in history)


def test_create_order_for_unknown_customer_is_rejected(db):
    with pytest.raises(NotFoundError):
        order_service.create_order(
            db,
            customer_id="nobody",
            items=[{"name": "Tea", "quantity": 1, "price": 40}],
            shipping_address=SHIPPING,
            payment_method="cash",
        )


def test_create_order_rejects_bad_items_and_payment_method(db, make_customer):
    customer = make_customer()

    with pytest.raises(ValidationError) as exc_info:
        _create(db, customer, items=[{"name": "Tea", "quantity": 0, "price": 40}])
    assert exc_info.value.details

    with pytest.raises(ValidationError):
        _create(db, customer, payment_method="cheque")

    with pytest.raises(ValidationError):
        order_service.create_order(
            db,
            customer_id=customer.id,
            items=[{"name": "Tea", "quantity": 1, "price": 40}],
            shipping_address={"street": "1 Main St"},
            payment_method="cash",
        )

    db.refresh(customer)
    assert customer.total_purchases == 0


def test_status_transitions_are_guarded(db, make_customer):
    order = _create(db, make_customer())

    assert order_service.update_order_status(db, order.id, status="processing").status == "processing"
    assert order_service.update_order_status(db, order.id, status="completed").status == "completed"

    with pytest.raises(ValidationError):
        order_service.update_order_status(db, order.id, status="processing")
    with pytest.raises(ValidationError):
        order_service.update_order_status(db, order.id, status="shipped")


def test_update_order_replaces_items_and_checks_the_total(db, make_customer):
    customer = make_customer()
    order = _create(db, customer)

    updated = order_service.update_order(
        db,
        order.id,
        customer_id=customer.id,
        items=[{"name": "Saree", "quantity": 1, "price": 2500}],
        shipping_address=SHIPPING,
        payment_method="card",
        status="processing",
        payment_status="paid",
        total_amount=Decimal("2500.00"),
    )

    assert updated.total_amount == Decimal("2500.00")
    assert updated.status == "processing"
    assert updated.payment_status == "paid"
    assert [item.name for item in order_service.items_by_order(db, [order.id])[order.id]] == ["Saree"]

    with pytest.raises(ValidationError, match="Total amount mismatch"):
        order_service.update_order(
            db,
            order.id,
            customer_id=customer.id,
            items=[{"name": "Saree", "quantity": 1, "price": 2500}],
            shipping_address=SHIPPING,
            payment_method="card",
            total_amount=Decimal("2400.00"),
        )


def test_payment_status_and_delete(db, make_customer):
    order = _create(db, make_customer())

    assert order_service.update_payment_status(db, order.id, payment_status="paid").payment_status == "paid"
    with pytest.raises(ValidationError):
        order_service.update_payment_status(db, order.id, payment_status="refunded")

    order_service.delete_order(db, order.id)
    with pytest.raises(NotFoundError):
        order_service.order_or_404(db, order.id)
    assert order_service.items_by_order(db, [order.id]) == {order.id: []}


def test_list_orders_filters_by_customer_and_status(db, make_customer):
    alice = make_customer("Alice")
    bob = make_customer("Bob")
    first = _create(db, alice)
    _create(db, bob)
    order_service.update_order_status(db, first.id, status="cancelled")

    rows, total = order_service.list_orders(db, customer_id=alice.id)
    assert total == 1
    assert rows[0].id == first.id

    rows, total = order_service.list_orders(db, status="pending")
    assert total == 1
    assert rows[0].customer_id == bob.id
