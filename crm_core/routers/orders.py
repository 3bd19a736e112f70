from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from crm_core.core.api_docs import error_responses
from crm_core.core.deps import get_db
from crm_core.core.money import to_money
from crm_core.models.order import Order, OrderItem
from crm_core.schemas.common import PaginationMeta
from crm_core.schemas.order import (
    OrderCreateIn,
    OrderItemOut,
    OrderListOut,
    OrderOut,
    OrderPaymentUpdateIn,
    OrderStatus,
    OrderStatusUpdateIn,
    OrderUpdateIn,
)
from crm_core.services import order_service

router = APIRouter(prefix="/orders", tags=["orders"])


def order_out(order: Order, items: list[OrderItem]) -> OrderOut:
    return OrderOut(
        id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        items=[
            OrderItemOut(
                name=item.name,
                quantity=item.quantity,
                price=float(to_money(item.price)),
                line_total=float(to_money(item.line_total)),
            )
            for item in items
        ],
        total_amount=float(to_money(order.total_amount)),
        status=order.status,
        payment_status=order.payment_status,
        payment_method=order.payment_method,
        shipping_address=dict(order.shipping_address_json or {}),
        notes=order.notes,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def _single_order_out(db: Session, order: Order) -> OrderOut:
    return order_out(order, order_service.items_by_order(db, [order.id])[order.id])


@router.post(
    "",
    response_model=OrderOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
    responses=error_responses(400, 404, 409, 422, 500),
)
def create_order(payload: OrderCreateIn, db: Session = Depends(get_db)):
    order = order_service.create_order(
        db,
        customer_id=payload.customer_id,
        items=payload.items,
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
        notes=payload.notes,
    )
    return _single_order_out(db, order)


@router.get(
    "",
    response_model=OrderListOut,
    summary="List orders",
    responses=error_responses(400, 422, 500),
)
def list_orders(
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
    customer_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    normalized_customer_id = customer_id.strip() if customer_id and customer_id.strip() else None
    rows, total = order_service.list_orders(
        db,
        status=status_filter,
        customer_id=normalized_customer_id,
        limit=limit,
        offset=offset,
    )
    grouped = order_service.items_by_order(db, [row.id for row in rows])
    items = [order_out(row, grouped[row.id]) for row in rows]
    return OrderListOut(
        items=items,
        pagination=PaginationMeta.build(total=total, limit=limit, offset=offset, count=len(items)),
        status=status_filter,
        customer_id=normalized_customer_id,
    )


@router.get(
    "/{order_id}",
    response_model=OrderOut,
    summary="Get order",
    responses=error_responses(404, 500),
)
def get_order(order_id: str, db: Session = Depends(get_db)):
    return _single_order_out(db, order_service.order_or_404(db, order_id))


@router.put(
    "/{order_id}",
    response_model=OrderOut,
    summary="Replace order contents",
    responses=error_responses(400, 404, 422, 500),
)
def update_order(order_id: str, payload: OrderUpdateIn, db: Session = Depends(get_db)):
    order = order_service.update_order(
        db,
        order_id,
        customer_id=payload.customer_id,
        items=payload.items,
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
        status=payload.status,
        payment_status=payload.payment_status,
        total_amount=payload.total_amount,
        notes=payload.notes,
    )
    return _single_order_out(db, order)


@router.patch(
    "/{order_id}/status",
    response_model=OrderOut,
    summary="Update order status",
    responses=error_responses(400, 404, 422, 500),
)
def update_order_status(order_id: str, payload: OrderStatusUpdateIn, db: Session = Depends(get_db)):
    order = order_service.update_order_status(db, order_id, status=payload.status)
    return _single_order_out(db, order)


@router.patch(
    "/{order_id}/payment",
    response_model=OrderOut,
    summary="Update order payment status",
    responses=error_responses(400, 404, 422, 500),
)
def update_order_payment(order_id: str, payload: OrderPaymentUpdateIn, db: Session = Depends(get_db)):
    order = order_service.update_payment_status(db, order_id, payment_status=payload.payment_status)
    return _single_order_out(db, order)


@router.delete(
    "/{order_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete order",
    responses=error_responses(404, 500),
)
def delete_order(order_id: str, db: Session = Depends(get_db)):
    order_service.delete_order(db, order_id)
