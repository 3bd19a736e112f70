import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_core.core.errors import ConflictError, NotFoundError, ValidationError, validation_details
from crm_core.core.id_utils import generate_id
from crm_core.core.money import MONEY_QUANT, line_total, sum_line_totals, to_money
from crm_core.core.observability import log_event
from crm_core.models.customer import Customer
from crm_core.models.order import Order, OrderItem
from crm_core.schemas.order import OrderItemIn, ShippingAddressIn

logger = logging.getLogger("crm.orders")

ORDER_STATUSES = ("pending", "processing", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed")
PAYMENT_METHODS = ("cash", "card", "upi", "bank_transfer")

ALLOWED_ORDER_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing", "cancelled"},
    "processing": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

ORDER_NUMBER_PREFIX = "ORD"
_ORDER_NUMBER_WIDTH = 6
_ORDER_NUMBER_ATTEMPTS = 3
_TOTAL_TOLERANCE = MONEY_QUANT

_ITEMS_ADAPTER = TypeAdapter(list[OrderItemIn])


def ensure_transition_allowed(current_status: str, next_status: str) -> None:
    if current_status == next_status:
        return
    if next_status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid order status '{next_status}'")
    allowed_next = ALLOWED_ORDER_TRANSITIONS.get(current_status, set())
    if next_status not in allowed_next:
        raise ValidationError(f"Cannot transition order from '{current_status}' to '{next_status}'")


def allocate_order_number(db: Session) -> str:
    """Next global sequential order number: highest existing ``ORDnnnnnn`` plus one."""
    latest = db.execute(
        select(Order.order_number)
        .where(Order.order_number.like(f"{ORDER_NUMBER_PREFIX}%"))
        .order_by(func.length(Order.order_number).desc(), Order.order_number.desc())
        .limit(1)
    ).scalar_one_or_none()
    sequence = 0
    if latest:
        suffix = latest[len(ORDER_NUMBER_PREFIX):]
        sequence = int(suffix) if suffix.isdigit() else 0
    return f"{ORDER_NUMBER_PREFIX}{sequence + 1:0{_ORDER_NUMBER_WIDTH}d}"


def _normalize_items(items: Sequence[OrderItemIn | Mapping[str, Any]]) -> list[OrderItemIn]:
    raw = [item.model_dump() if isinstance(item, OrderItemIn) else item for item in (items or [])]
    if not raw:
        raise ValidationError("At least one item is required")
    try:
        return _ITEMS_ADAPTER.validate_python(raw)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid order items", details=validation_details(exc)) from exc


def _normalize_shipping_address(address: ShippingAddressIn | Mapping[str, Any] | None) -> dict[str, Any]:
    if address is None:
        raise ValidationError("Shipping address is required")
    if isinstance(address, ShippingAddressIn):
        return address.model_dump()
    try:
        return ShippingAddressIn.model_validate(address).model_dump()
    except PydanticValidationError as exc:
        raise ValidationError("Invalid shipping address", details=validation_details(exc)) from exc


def _validate_payment_method(payment_method: str) -> str:
    normalized = (payment_method or "").strip().lower()
    if normalized not in PAYMENT_METHODS:
        allowed = ", ".join(PAYMENT_METHODS)
        raise ValidationError(f"Invalid payment method. Allowed: {allowed}")
    return normalized


def _customer_or_404(db: Session, customer_id: str) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("Customer not found")
    return customer


def order_or_404(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


def items_by_order(db: Session, order_ids: Sequence[str]) -> dict[str, list[OrderItem]]:
    grouped: dict[str, list[OrderItem]] = {order_id: [] for order_id in order_ids}
    if not order_ids:
        return grouped
    rows = db.execute(
        select(OrderItem)
        .where(OrderItem.order_id.in_(list(order_ids)))
        .order_by(OrderItem.order_id.asc(), OrderItem.position.asc())
    ).scalars().all()
    for row in rows:
        grouped.setdefault(row.order_id, []).append(row)
    return grouped


def _add_items(db: Session, *, order_id: str, items: list[OrderItemIn]) -> None:
    for position, item in enumerate(items):
        price = to_money(item.price)
        db.add(
            OrderItem(
                id=generate_id(),
                order_id=order_id,
                position=position,
                name=item.name,
                quantity=item.quantity,
                price=price,
                line_total=line_total(item.quantity, price),
            )
        )


def _record_purchase(customer: Customer, *, items: list[OrderItemIn], total: Decimal, purchased_at: datetime) -> None:
    customer.total_purchases = int(customer.total_purchases or 0) + 1
    customer.total_spend = to_money(Decimal(customer.total_spend or 0) + total)
    customer.last_purchase = purchased_at
    history = list(customer.purchase_history_json or [])
    for item in items:
        history.append(
            {
                "product_name": item.name,
                "amount": float(line_total(item.quantity, item.price)),
                "purchase_date": purchased_at.isoformat(),
            }
        )
    customer.purchase_history_json = history


def create_order(
    db: Session,
    *,
    customer_id: str,
    items: Sequence[OrderItemIn | Mapping[str, Any]],
    shipping_address: ShippingAddressIn | Mapping[str, Any],
    payment_method: str,
    notes: str | None = None,
) -> Order:
    """Create a pending order and fold it into the customer's purchase aggregates.

    The order and the aggregate update commit together. A clash on the order number
    is retried with a freshly allocated number.
    """
    normalized_items = _normalize_items(items)
    address = _normalize_shipping_address(shipping_address)
    method = _validate_payment_method(payment_method)
    total = sum_line_totals((item.quantity, item.price) for item in normalized_items)

    for attempt in range(1, _ORDER_NUMBER_ATTEMPTS + 1):
        customer = _customer_or_404(db, customer_id)
        now = datetime.now(timezone.utc)
        order = Order(
            id=generate_id(),
            order_number=allocate_order_number(db),
            customer_id=customer.id,
            payment_method=method,
            status="pending",
            payment_status="pending",
            total_amount=total,
            shipping_address_json=address,
            notes=notes,
            created_at=now,
        )
        db.add(order)
        _add_items(db, order_id=order.id, items=normalized_items)
        _record_purchase(customer, items=normalized_items, total=total, purchased_at=now)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if attempt == _ORDER_NUMBER_ATTEMPTS:
                raise ConflictError("Could not allocate a unique order number") from exc
            log_event(logger, "order.number_retry", attempt=attempt, level=logging.WARNING)
            continue
        db.refresh(order)
        log_event(
            logger,
            "order.created",
            order_id=order.id,
            order_number=order.order_number,
            customer_id=customer.id,
            total=total,
        )
        return order
    raise ConflictError("Could not allocate a unique order number")


def update_order(
    db: Session,
    order_id: str,
    *,
    customer_id: str,
    items: Sequence[OrderItemIn | Mapping[str, Any]],
    shipping_address: ShippingAddressIn | Mapping[str, Any],
    payment_method: str,
    status: str | None = None,
    payment_status: str | None = None,
    total_amount: Decimal | float | None = None,
    notes: str | None = None,
) -> Order:
    """Full replacement of an order's contents.

    ``total_amount`` is recomputed from the items; a supplied value that disagrees by
    more than one cent is rejected. Customer aggregates are not adjusted.
    """
    order = order_or_404(db, order_id)
    normalized_items = _normalize_items(items)
    address = _normalize_shipping_address(shipping_address)
    method = _validate_payment_method(payment_method)
    customer = _customer_or_404(db, customer_id)

    total = sum_line_totals((item.quantity, item.price) for item in normalized_items)
    if total_amount is not None and abs(to_money(total_amount) - total) > _TOTAL_TOLERANCE:
        raise ValidationError("Total amount mismatch with items total")
    if status is not None:
        ensure_transition_allowed(order.status, status)
    if payment_status is not None and payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment status '{payment_status}'")

    previous_status = order.status
    db.execute(delete(OrderItem).where(OrderItem.order_id == order.id))
    _add_items(db, order_id=order.id, items=normalized_items)
    order.customer_id = customer.id
    order.shipping_address_json = address
    order.payment_method = method
    order.total_amount = total
    order.notes = notes
    if status is not None:
        order.status = status
    if payment_status is not None:
        order.payment_status = payment_status
    db.commit()
    db.refresh(order)
    log_event(logger, "order.updated", order_id=order.id, previous_status=previous_status, status=order.status, total=total)
    return order


def update_order_status(db: Session, order_id: str, *, status: str) -> Order:
    order = order_or_404(db, order_id)
    previous_status = order.status
    ensure_transition_allowed(previous_status, status)
    order.status = status
    db.commit()
    db.refresh(order)
    log_event(logger, "order.status_changed", order_id=order.id, previous_status=previous_status, status=status)
    return order


def update_payment_status(db: Session, order_id: str, *, payment_status: str) -> Order:
    if payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment status '{payment_status}'")
    order = order_or_404(db, order_id)
    order.payment_status = payment_status
    db.commit()
    db.refresh(order)
    log_event(logger, "order.payment_status_changed", order_id=order.id, payment_status=payment_status)
    return order


def delete_order(db: Session, order_id: str) -> None:
    order = order_or_404(db, order_id)
    db.execute(delete(OrderItem).where(OrderItem.order_id == order.id))
    db.delete(order)
    db.commit()
    log_event(logger, "order.deleted", order_id=order_id)


def list_orders(
    db: Session,
    *,
    status: str | None = None,
    customer_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    count_stmt = select(func.count(Order.id))
    data_stmt = select(Order)
    if status:
        count_stmt = count_stmt.where(Order.status == status)
        data_stmt = data_stmt.where(Order.status == status)
    if customer_id:
        count_stmt = count_stmt.where(Order.customer_id == customer_id)
        data_stmt = data_stmt.where(Order.customer_id == customer_id)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        data_stmt.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit)
    ).scalars().all()
    return list(rows), total


def orders_for_customer(db: Session, customer_id: str, *, limit: int | None = None) -> list[Order]:
    stmt = select(Order).where(Order.customer_id == customer_id).order_by(Order.created_at.desc(), Order.id.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars().all())
