import logging
import time
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from crm_core.core.errors import NotFoundError, ValidationError, validation_details
from crm_core.core.id_utils import generate_id
from crm_core.core.observability import log_event
from crm_core.models.customer import Customer
from crm_core.models.order import Order
from crm_core.models.segment import Segment, SegmentMember
from crm_core.schemas.segment import ConditionGroupIn
from crm_core.services.metrics_service import project_customer_metrics
from crm_core.services.rule_engine import evaluate_rule

logger = logging.getLogger("crm.segments")

_CONDITIONS_ADAPTER = TypeAdapter(list[ConditionGroupIn])


def normalize_conditions(raw: Sequence[ConditionGroupIn | Mapping[str, Any]] | None) -> list[dict[str, Any]]:
    """Validate a condition tree and return its plain JSON form."""
    items = [item.model_dump() if isinstance(item, ConditionGroupIn) else item for item in (raw or [])]
    try:
        groups = _CONDITIONS_ADAPTER.validate_python(items)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid segment conditions", details=validation_details(exc)) from exc
    return [group.model_dump(mode="json") for group in groups]


def evaluate_group(group: Mapping[str, Any], metrics: Mapping[str, Any]) -> bool:
    rules = group.get("rules") or []
    operator = str(group.get("operator") or "").upper()
    if operator == "AND":
        return all(evaluate_rule(rule, metrics) for rule in rules)
    if operator == "OR":
        return any(evaluate_rule(rule, metrics) for rule in rules)
    return False


def matches_segment(conditions: Sequence[Mapping[str, Any]], metrics: Mapping[str, Any]) -> bool:
    """Groups are AND-ed together; evaluation stops at the first failing group."""
    for group in conditions:
        if not evaluate_group(group, metrics):
            return False
    return True


def customer_matches_segment(
    db: Session,
    *,
    segment: Segment,
    customer: Customer,
    now: datetime | None = None,
) -> bool:
    orders = db.execute(select(Order).where(Order.customer_id == customer.id)).scalars().all()
    metrics = project_customer_metrics(customer, orders, now=now)
    return matches_segment(segment.conditions_json or [], metrics)


def evaluate_population(
    db: Session,
    conditions: Sequence[Mapping[str, Any]],
    *,
    now: datetime | None = None,
) -> list[str]:
    """Ids of every customer matching ``conditions``, in customer creation order.

    Loads the whole customer and order population into memory once per call.
    """
    now = now or datetime.now(timezone.utc)
    customers = db.execute(select(Customer).order_by(Customer.created_at.asc(), Customer.id.asc())).scalars().all()
    orders_by_customer: dict[str, list[Order]] = {}
    for order in db.execute(select(Order)).scalars().all():
        orders_by_customer.setdefault(order.customer_id, []).append(order)

    matched: list[str] = []
    for customer in customers:
        metrics = project_customer_metrics(customer, orders_by_customer.get(customer.id, []), now=now)
        if matches_segment(conditions, metrics):
            matched.append(customer.id)
    return matched


def recompute_membership(db: Session, *, segment: Segment) -> list[str]:
    started = time.perf_counter()
    customer_ids = evaluate_population(db, segment.conditions_json or [])

    db.execute(delete(SegmentMember).where(SegmentMember.segment_id == segment.id))
    for position, customer_id in enumerate(customer_ids):
        db.add(
            SegmentMember(
                id=generate_id(),
                segment_id=segment.id,
                customer_id=customer_id,
                position=position,
            )
        )
    segment.audience_size = len(customer_ids)
    segment.last_evaluated_at = datetime.now(timezone.utc)
    db.flush()

    log_event(
        logger,
        "segment.recompute",
        segment_id=segment.id,
        audience_size=segment.audience_size,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return customer_ids


def preview_conditions(db: Session, conditions: Sequence[ConditionGroupIn | Mapping[str, Any]] | None) -> int:
    return len(evaluate_population(db, normalize_conditions(conditions)))


def segment_or_404(db: Session, segment_id: str) -> Segment:
    segment = db.get(Segment, segment_id)
    if not segment:
        raise NotFoundError("Segment not found")
    return segment


def segment_customer_ids(db: Session, segment_id: str) -> list[str]:
    return list(
        db.execute(
            select(SegmentMember.customer_id)
            .where(SegmentMember.segment_id == segment_id)
            .order_by(SegmentMember.position.asc())
        ).scalars().all()
    )


def create_segment(
    db: Session,
    *,
    name: str,
    description: str | None = None,
    conditions: Sequence[ConditionGroupIn | Mapping[str, Any]] | None = None,
) -> Segment:
    cleaned_name = (name or "").strip()
    if not cleaned_name:
        raise ValidationError("Segment name is required")
    segment = Segment(
        id=generate_id(),
        name=cleaned_name,
        description=description,
        conditions_json=normalize_conditions(conditions),
        is_active=True,
    )
    db.add(segment)
    db.flush()
    recompute_membership(db, segment=segment)
    db.commit()
    db.refresh(segment)
    return segment


def update_segment(
    db: Session,
    segment_id: str,
    *,
    name: str | None = None,
    description: str | None = None,
    conditions: Sequence[ConditionGroupIn | Mapping[str, Any]] | None = None,
    is_active: bool | None = None,
) -> Segment:
    segment = segment_or_404(db, segment_id)
    normalized = normalize_conditions(conditions) if conditions is not None else None
    if name is not None:
        cleaned_name = name.strip()
        if not cleaned_name:
            raise ValidationError("Segment name cannot be empty")
        segment.name = cleaned_name
    if description is not None:
        segment.description = description
    if normalized is not None:
        segment.conditions_json = normalized
    if is_active is not None:
        segment.is_active = is_active
    recompute_membership(db, segment=segment)
    db.commit()
    db.refresh(segment)
    return segment


def refresh_segment(db: Session, segment_id: str) -> Segment:
    segment = segment_or_404(db, segment_id)
    recompute_membership(db, segment=segment)
    db.commit()
    db.refresh(segment)
    return segment


def delete_segment(db: Session, segment_id: str) -> None:
    segment = segment_or_404(db, segment_id)
    db.execute(delete(SegmentMember).where(SegmentMember.segment_id == segment.id))
    db.delete(segment)
    db.commit()
    log_event(logger, "segment.delete", segment_id=segment_id)


def list_segments(db: Session, *, limit: int = 50, offset: int = 0) -> tuple[list[Segment], int]:
    total = int(db.execute(select(func.count(Segment.id))).scalar_one())
    rows = db.execute(
        select(Segment).order_by(Segment.created_at.desc(), Segment.id.desc()).offset(offset).limit(limit)
    ).scalars().all()
    return list(rows), total
