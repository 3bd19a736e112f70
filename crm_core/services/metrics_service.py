from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from crm_core.models.customer import Customer
from crm_core.models.order import Order
from crm_core.services.rule_engine import as_utc

_SECONDS_PER_DAY = 60 * 60 * 24


def project_customer_metrics(
    customer: Customer,
    orders: Sequence[Order],
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Flatten one customer and their orders into the feature set segment rules read.

    ``totalSpend``/``totalPurchases``/``lastPurchase`` come from the customer's eagerly
    maintained aggregates, not from ``orders``.

    ``orderFrequency`` is *days per order* (account age in days divided by order count),
    so a larger value means a less frequent buyer.
    """
    now = as_utc(now or datetime.now(timezone.utc))
    order_count = len(orders)

    average_order_value = 0.0
    order_frequency = 0.0
    if order_count:
        average_order_value = sum(float(order.total_amount or 0) for order in orders) / order_count
        if customer.created_at is not None:
            age_seconds = (now - as_utc(customer.created_at)).total_seconds()
            order_frequency = age_seconds / (_SECONDS_PER_DAY * order_count)

    ordered = sorted(orders, key=lambda order: as_utc(order.created_at))
    return {
        "totalSpend": float(customer.total_spend or 0),
        "totalPurchases": int(customer.total_purchases or 0),
        "lastPurchase": as_utc(customer.last_purchase) if customer.last_purchase else None,
        "averageOrderValue": average_order_value,
        "orderFrequency": order_frequency,
        "paymentMethod": _distinct(order.payment_method for order in ordered),
        "orderStatus": _distinct(order.status for order in ordered),
    }


def _distinct(values) -> list[str]:
    return list(dict.fromkeys(value for value in values if value))
