from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from crm_core.core.api_docs import error_responses
from crm_core.core.deps import get_db
from crm_core.core.money import to_money
from crm_core.models.customer import Customer
from crm_core.models.order import Order
from crm_core.routers.orders import order_out
from crm_core.schemas.common import PaginationMeta
from crm_core.schemas.customer import (
    CustomerCreateIn,
    CustomerDetailOut,
    CustomerListOut,
    CustomerOut,
    CustomerUpdateIn,
    PurchaseHistoryEntryOut,
)
from crm_core.services import customer_service, order_service

router = APIRouter(prefix="/customers", tags=["customers"])


def _customer_fields(customer: Customer) -> dict:
    return {
        "id": customer.id,
        "name": customer.name,
        "email": customer.email,
        "phone": customer.phone,
        "address": customer.address,
        "total_spend": float(to_money(customer.total_spend or 0)),
        "total_purchases": customer.total_purchases,
        "last_purchase": customer.last_purchase,
        "last_visited": customer.last_visited,
        "purchase_history": [
            PurchaseHistoryEntryOut.model_validate(entry) for entry in customer.purchase_history_json or []
        ],
        "is_active": customer.is_active,
        "created_at": customer.created_at,
        "updated_at": customer.updated_at,
    }


def _customer_detail_out(db: Session, customer: Customer, orders: list[Order]) -> CustomerDetailOut:
    grouped = order_service.items_by_order(db, [order.id for order in orders])
    return CustomerDetailOut(
        **_customer_fields(customer),
        orders=[order_out(order, grouped[order.id]) for order in orders],
    )


@router.post(
    "",
    response_model=CustomerOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create customer",
    responses=error_responses(400, 409, 422, 500),
)
def create_customer(payload: CustomerCreateIn, db: Session = Depends(get_db)):
    customer = customer_service.create_customer(db, **payload.model_dump())
    return CustomerOut(**_customer_fields(customer))


@router.get(
    "",
    response_model=CustomerListOut,
    summary="List customers with their most recent orders",
    responses=error_responses(400, 422, 500),
)
def list_customers(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    rows, total = customer_service.list_customers(db, limit=limit, offset=offset)
    recent = customer_service.recent_orders_by_customer(db, [row.id for row in rows])
    items = [_customer_detail_out(db, row, recent[row.id]) for row in rows]
    return CustomerListOut(
        items=items,
        pagination=PaginationMeta.build(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.get(
    "/{customer_id}",
    response_model=CustomerDetailOut,
    summary="Get customer with order history",
    responses=error_responses(404, 500),
)
def get_customer(customer_id: str, db: Session = Depends(get_db)):
    customer = customer_service.customer_or_404(db, customer_id)
    return _customer_detail_out(db, customer, order_service.orders_for_customer(db, customer.id))


@router.patch(
    "/{customer_id}",
    response_model=CustomerOut,
    summary="Update customer",
    responses=error_responses(400, 404, 409, 422, 500),
)
def update_customer(customer_id: str, payload: CustomerUpdateIn, db: Session = Depends(get_db)):
    customer = customer_service.update_customer(db, customer_id, **payload.model_dump(exclude_unset=True))
    return CustomerOut(**_customer_fields(customer))


@router.delete(
    "/{customer_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete customer",
    responses=error_responses(404, 500),
)
def delete_customer(customer_id: str, db: Session = Depends(get_db)):
    customer_service.delete_customer(db, customer_id)
