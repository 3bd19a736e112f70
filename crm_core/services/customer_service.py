import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_core.core.errors import ConflictError, NotFoundError, ValidationError
from crm_core.core.id_utils import generate_id
from crm_core.core.money import to_money
from crm_core.core.observability import log_event
from crm_core.models.customer import Customer
from crm_core.models.order import Order

logger = logging.getLogger("crm.api")

RECENT_ORDERS_LIMIT = 5

_UPDATABLE_FIELDS = (
    "name",
    "email",
    "phone",
    "address",
    "total_spend",
    "total_purchases",
    "last_purchase",
    "last_visited",
    "is_active",
)


def customer_or_404(db: Session, customer_id: str) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("Customer not found")
    return customer


def _email_taken(db: Session, email: str, *, exclude_id: str | None = None) -> bool:
    stmt = select(Customer.id).where(func.lower(Customer.email) == email.lower())
    if exclude_id:
        stmt = stmt.where(Customer.id != exclude_id)
    return db.execute(stmt.limit(1)).scalar_one_or_none() is not None


def create_customer(
    db: Session,
    *,
    name: str,
    email: str,
    phone: str | None = None,
    address: str | None = None,
    total_spend: Decimal | float = 0,
    total_purchases: int = 0,
    last_purchase: datetime | None = None,
    last_visited: datetime | None = None,
    is_active: bool = True,
) -> Customer:
    cleaned_name = (name or "").strip()
    cleaned_email = (email or "").strip().lower()
    if not cleaned_name:
        raise ValidationError("Customer name is required")
    if not cleaned_email:
        raise ValidationError("Customer email is required")
    if to_money(total_spend) < 0 or total_purchases < 0:
        raise ValidationError("Purchase aggregates cannot be negative")
    if _email_taken(db, cleaned_email):
        raise ConflictError("A customer with this email already exists")

    customer = Customer(
        id=generate_id(),
        name=cleaned_name,
        email=cleaned_email,
        phone=phone,
        address=address,
        total_spend=to_money(total_spend),
        total_purchases=total_purchases,
        last_purchase=last_purchase,
        last_visited=last_visited,
        purchase_history_json=[],
        is_active=is_active,
    )
    db.add(customer)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("A customer with this email already exists") from exc
    db.refresh(customer)
    log_event(logger, "customer.created", customer_id=customer.id)
    return customer


def update_customer(db: Session, customer_id: str, **changes) -> Customer:
    """Partial update. Only the keys present in ``changes`` are written."""
    unknown = set(changes) - set(_UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown customer fields: {', '.join(sorted(unknown))}")
    if not changes:
        raise ValidationError("At least one field must be provided")

    customer = customer_or_404(db, customer_id)
    if "name" in changes:
        cleaned_name = (changes["name"] or "").strip()
        if not cleaned_name:
            raise ValidationError("Customer name cannot be empty")
        changes["name"] = cleaned_name
    if "email" in changes:
        cleaned_email = (changes["email"] or "").strip().lower()
        if not cleaned_email:
            raise ValidationError("Customer email cannot be empty")
        if _email_taken(db, cleaned_email, exclude_id=customer.id):
            raise ConflictError("A customer with this email already exists")
        changes["email"] = cleaned_email
    if changes.get("total_spend") is not None:
        changes["total_spend"] = to_money(changes["total_spend"])
        if changes["total_spend"] < 0:
            raise ValidationError("total_spend cannot be negative")
    if changes.get("total_purchases") is not None and changes["total_purchases"] < 0:
        raise ValidationError("total_purchases cannot be negative")

    for field, value in changes.items():
        if value is None and field in ("name", "email", "total_spend", "total_purchases", "is_active"):
            continue
        setattr(customer, field, value)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("A customer with this email already exists") from exc
    db.refresh(customer)
    log_event(logger, "customer.updated", customer_id=customer.id, fields=sorted(changes))
    return customer


def delete_customer(db: Session, customer_id: str) -> None:
    customer = customer_or_404(db, customer_id)
    db.delete(customer)
    db.commit()
    log_event(logger, "customer.deleted", customer_id=customer_id)


def list_customers(db: Session, *, limit: int = 50, offset: int = 0) -> tuple[list[Customer], int]:
    total = int(db.execute(select(func.count(Customer.id))).scalar_one())
    rows = db.execute(
        select(Customer).order_by(Customer.created_at.desc(), Customer.id.desc()).offset(offset).limit(limit)
    ).scalars().all()
    return list(rows), total


def recent_orders_by_customer(
    db: Session,
    customer_ids: list[str],
    *,
    per_customer: int = RECENT_ORDERS_LIMIT,
) -> dict[str, list[Order]]:
    grouped: dict[str, list[Order]] = {customer_id: [] for customer_id in customer_ids}
    if not customer_ids:
        return grouped
    rows = db.execute(
        select(Order)
        .where(Order.customer_id.in_(customer_ids))
        .order_by(Order.created_at.desc(), Order.id.desc())
    ).scalars().all()
    for order in rows:
        bucket = grouped.setdefault(order.customer_id, [])
        if len(bucket) < per_customer:
            bucket.append(order)
    return grouped
