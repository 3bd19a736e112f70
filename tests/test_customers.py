import pytest

from crm_core.core.errors import ConflictError, NotFoundError, ValidationError
from crm_core.services import customer_service, order_service

SHIPPING = {
    "street": "1 Market St",
    "city": "Pune",
    "state": "MH",
    "zip_code": "411001",
    "country": "India",
}


def test_create_customer_normalizes_email_and_rejects_duplicates(db):
    customer = customer_service.create_customer(db, name="  Asha ", email="Asha@Example.com")

    assert customer.name == "Asha"
    assert customer.email == "asha@example.com"
    assert customer.total_purchases == 0
    assert customer.purchase_history_json == []

    with pytest.raises(ConflictError):
        customer_service.create_customer(db, name="Other Asha", email="ASHA@example.com")


def test_create_customer_validates_required_fields(db):
    with pytest.raises(ValidationError):
        customer_service.create_customer(db, name=" ", email="x@example.com")
    with pytest.raises(ValidationError):
        customer_service.create_customer(db, name="X", email="x@example.com", total_spend=-1)


def test_partial_update_only_touches_given_fields(db, make_customer):
    customer = make_customer("Ravi", phone="+911111111111")
    other = make_customer("Meera")

    updated = customer_service.update_customer(db, customer.id, address="5 Lake Rd")

    assert updated.address == "5 Lake Rd"
    assert updated.phone == "+911111111111"
    assert updated.name == "Ravi"

    with pytest.raises(ConflictError):
        customer_service.update_customer(db, customer.id, email=other.email)
    with pytest.raises(ValidationError):
        customer_service.update_customer(db, customer.id)
    with pytest.raises(ValidationError):
        customer_service.update_customer(db, customer.id, favourite_colour="red")


def test_list_and_recent_orders(db, make_customer):
    buyer = make_customer("Buyer")
    make_customer("Browser")
    for _ in range(7):
        order_service.create_order(
            db,
            customer_id=buyer.id,
            items=[{"name": "Tea", "quantity": 1, "price": 10}],
            shipping_address=SHIPPING,
            payment_method="cash",
        )

    rows, total = customer_service.list_customers(db, limit=10)
    recent = customer_service.recent_orders_by_customer(db, [row.id for row in rows])

    assert total == 2
    assert len(recent[buyer.id]) == customer_service.RECENT_ORDERS_LIMIT
    assert len(order_service.orders_for_customer(db, buyer.id)) == 7


def test_delete_customer(db, make_customer):
    customer = make_customer()

    customer_service.delete_customer(db, customer.id)

    with pytest.raises(NotFoundError):
        customer_service.customer_or_404(db, customer.id)
