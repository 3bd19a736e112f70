from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from crm_core.models.customer import Customer
from crm_core.models.order import Order
from crm_core.services.metrics_service import project_customer_metrics
from crm_core.services.rule_engine import evaluate_rule
from crm_core.services.segment_service import evaluate_group, matches_segment

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class _CountingMetrics(Mapping):
    def __init__(self, data):
        self._data = data
        self.reads: list[str] = []

    def __getitem__(self, key):
        self.reads.append(key)
        return self._data[key]

    def __iter__(self):
        return iter(self._data)

    def __len__(self):
        return len(self._data)


def _rule(field, operator, value):
    return {"field": field, "operator": operator, "value": value}


def _order(total, *, days_ago=1, payment_method="card", status="completed"):
    return Order(
        id=f"order-{total}-{days_ago}",
        order_number="ORD000001",
        customer_id="customer-1",
        payment_method=payment_method,
        status=status,
        payment_status="paid",
        total_amount=Decimal(str(total)),
        shipping_address_json={},
        created_at=NOW - timedelta(days=days_ago),
    )


def test_numeric_comparisons():
    metrics = {"totalSpend": 1500.0, "totalPurchases": 3}

    assert evaluate_rule(_rule("totalSpend", "greaterThan", 1000), metrics) is True
    assert evaluate_rule(_rule("totalSpend", "lessThan", 1000), metrics) is False
    assert evaluate_rule(_rule("totalPurchases", "equals", 3), metrics) is True
    assert evaluate_rule(_rule("totalPurchases", "notEquals", 3), metrics) is False


def test_unknown_operator_is_false_and_never_raises():
    metrics = {"totalSpend": 1500.0}

    assert evaluate_rule(_rule("totalSpend", "between", [1, 2]), metrics) is False
    assert evaluate_rule({"field": "totalSpend"}, metrics) is False


def test_type_mismatch_is_false():
    metrics = {"totalSpend": 200.0, "paymentMethod": ["card"], "lastPurchase": None}

    assert evaluate_rule(_rule("totalSpend", "contains", "2"), metrics) is False
    assert evaluate_rule(_rule("totalSpend", "notContains", "2"), metrics) is False
    assert evaluate_rule(_rule("totalSpend", "greaterThan", "100"), metrics) is False
    assert evaluate_rule(_rule("totalSpend", "in", 200), metrics) is False
    assert evaluate_rule(_rule("totalSpend", "notIn", 200), metrics) is False
    assert evaluate_rule(_rule("lastPurchase", "greaterThan", "2026-01-01"), metrics) is False


def test_equality_is_strict_about_bool():
    assert evaluate_rule(_rule("totalPurchases", "equals", True), {"totalPurchases": 1}) is False
    assert evaluate_rule(_rule("totalPurchases", "equals", 1.0), {"totalPurchases": 1}) is True
    assert evaluate_rule(_rule("paymentMethod", "equals", "card"), {"paymentMethod": "card"}) is True


def test_list_valued_fields():
    metrics = {"paymentMethod": ["card", "upi"], "orderStatus": ["completed"]}

    assert evaluate_rule(_rule("paymentMethod", "contains", "upi"), metrics) is True
    assert evaluate_rule(_rule("paymentMethod", "notContains", "cash"), metrics) is True
    assert evaluate_rule(_rule("paymentMethod", "in", ["cash", "upi"]), metrics) is True
    assert evaluate_rule(_rule("orderStatus", "notIn", ["cancelled"]), metrics) is True
    assert evaluate_rule(_rule("orderStatus", "in", ["cancelled", "pending"]), metrics) is False


def test_string_membership_and_substring():
    metrics = {"paymentMethod": "bank_transfer"}

    assert evaluate_rule(_rule("paymentMethod", "contains", "bank"), metrics) is True
    assert evaluate_rule(_rule("paymentMethod", "in", ["cash", "bank_transfer"]), metrics) is True
    assert evaluate_rule(_rule("paymentMethod", "notIn", ["cash"]), metrics) is True


def test_temporal_comparison_accepts_iso_strings():
    metrics = {"lastPurchase": datetime(2026, 10, 1, tzinfo=timezone.utc)}

    assert evaluate_rule(_rule("lastPurchase", "greaterThan", "2026-09-01T00:00:00Z"), metrics) is True
    assert evaluate_rule(_rule("lastPurchase", "lessThan", "2026-09-01"), metrics) is False
    assert evaluate_rule(_rule("lastPurchase", "greaterThan", "not a date"), metrics) is False


def test_group_operators():
    over_1000 = _rule("totalSpend", "greaterThan", 1000)
    frequent = _rule("totalPurchases", "greaterThan", 5)
    metrics = {"totalSpend": 1500.0, "totalPurchases": 2}

    assert evaluate_group({"operator": "AND", "rules": [over_1000, frequent]}, metrics) is False
    assert evaluate_group({"operator": "OR", "rules": [over_1000, frequent]}, metrics) is True
    assert evaluate_group({"operator": "XOR", "rules": [over_1000]}, metrics) is False


def test_example_threshold_segment():
    conditions = [{"operator": "AND", "rules": [_rule("totalSpend", "greaterThan", 1000)]}]

    assert matches_segment(conditions, {"totalSpend": 1500.0}) is True
    assert matches_segment(conditions, {"totalSpend": 500.0}) is False


def test_groups_are_anded_and_evaluation_stops_at_first_failing_group():
    conditions = [
        {"operator": "AND", "rules": [_rule("totalSpend", "greaterThan", 1000)]},
        {"operator": "AND", "rules": [_rule("totalPurchases", "greaterThan", 0)]},
    ]
    metrics = _CountingMetrics({"totalSpend": 10.0, "totalPurchases": 4})

    assert matches_segment(conditions, metrics) is False
    assert "totalPurchases" not in metrics.reads


def test_matching_is_deterministic():
    conditions = [
        {"operator": "OR", "rules": [_rule("paymentMethod", "in", ["upi"]), _rule("totalSpend", "lessThan", 10)]},
    ]
    metrics = {"paymentMethod": ["upi"], "totalSpend": 50.0}

    results = {matches_segment(conditions, metrics) for _ in range(20)}
    assert results == {True}


def test_project_customer_metrics_from_orders():
    customer = Customer(
        id="customer-1",
        name="Asha",
        email="asha@example.com",
        total_spend=Decimal("300.00"),
        total_purchases=2,
        last_purchase=NOW - timedelta(days=1),
        created_at=NOW - timedelta(days=20),
    )
    orders = [
        _order(100, days_ago=5, payment_method="upi", status="completed"),
        _order(200, days_ago=1, payment_method="card", status="pending"),
    ]

    metrics = project_customer_metrics(customer, orders, now=NOW)

    assert metrics["totalSpend"] == 300.0
    assert metrics["totalPurchases"] == 2
    assert metrics["lastPurchase"] == NOW - timedelta(days=1)
    assert metrics["averageOrderValue"] == 150.0
    # days per order: 20 days of account age over 2 orders
    assert metrics["orderFrequency"] == 10.0
    assert metrics["paymentMethod"] == ["upi", "card"]
    assert metrics["orderStatus"] == ["completed", "pending"]


def test_project_customer_metrics_without_orders():
    customer = Customer(
        id="customer-2",
        name="Ben",
        email="ben@example.com",
        total_spend=Decimal("0"),
        total_purchases=0,
        created_at=NOW - timedelta(days=3),
    )

    metrics = project_customer_metrics(customer, [], now=NOW)

    assert metrics["averageOrderValue"] == 0.0
    assert metrics["orderFrequency"] == 0.0
    assert metrics["lastPurchase"] is None
    assert metrics["paymentMethod"] == []
