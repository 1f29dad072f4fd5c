from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

ORDER_STATUSES = ("pending", "processing", "paid", "shipped", "delivered", "cancelled")
PROFIT_STATUSES = frozenset({"paid", "shipped", "delivered"})
PIPELINE_STATUSES = frozenset({"pending", "processing"})
LOSS_STATUSES = frozenset({"cancelled"})
REPORT_INTERVALS = ("day", "week", "month")
MAX_TREND_BUCKETS = 400
TOP_PRODUCTS_LIMIT = 10


def money(value) -> float:
    return round(float(value or 0) + 0.0, 2)


def percentage(part, whole) -> float:
    if not whole:
        return 0.0
    return money(part / whole * 100)


def bucket_start(moment: datetime, interval: str) -> datetime:
    day = datetime(moment.year, moment.month, moment.day)
    if interval == "week":
        return day - timedelta(days=day.weekday())
    if interval == "month":
        return day.replace(day=1)
    return day


def next_bucket(start: datetime, interval: str) -> datetime:
    if interval == "week":
        return start + timedelta(days=7)
    if interval == "month":
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)
    return start + timedelta(days=1)


def bucket_key(start: datetime, interval: str) -> str:
    if interval == "month":
        return start.strftime("%Y-%m")
    return start.strftime("%Y-%m-%d")


def bucket_label(start: datetime, interval: str) -> str:
    if interval == "month":
        return start.strftime("%b %Y")
    if interval == "week":
        return f"Wk {start.day} {start.strftime('%b')}"
    return f"{start.day} {start.strftime('%b')}"


def empty_bucket(start: datetime, interval: str) -> Dict:
    return {
        "key": bucket_key(start, interval),
        "label": bucket_label(start, interval),
        "orders": 0,
        "revenue": 0.0,
        "profit": 0.0,
        "loss": 0.0,
        "netProfitLoss": 0.0,
    }


def to_naive_utc(value) -> Optional[datetime]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        offset = value.utcoffset() or timedelta(0)
        return (value - offset).replace(tzinfo=None)
    return value


def order_total(order_document: Dict) -> float:
    pricing = order_document.get("pricing") or {}
    if order_document.get("total_price") is not None:
        return float(order_document.get("total_price") or 0)
    return float(pricing.get("final_total") or 0)


def seed_trend_buckets(start: Optional[datetime], end: Optional[datetime], interval: str):
    """Pre-create every bucket between the bounds so gaps render as zero.

    ``end`` is exclusive. Nothing is seeded when either bound is missing.
    """
    buckets: "OrderedDict[str, Dict]" = OrderedDict()
    if not start or not end or start >= end:
        return buckets

    cursor = bucket_start(start, interval)
    while cursor < end and len(buckets) < MAX_TREND_BUCKETS:
        buckets[bucket_key(cursor, interval)] = empty_bucket(cursor, interval)
        cursor = next_bucket(cursor, interval)
    return buckets


def build_order_report(
    orders: Iterable[Dict],
    interval: str = "day",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    filters: Optional[Dict] = None,
) -> Dict:
    """Aggregate orders into totals, trend, breakdowns and top products.

    All timestamps are treated as UTC and every money value is rounded to
    two decimals.
    """
    interval = interval if interval in REPORT_INTERVALS else "day"
    trend = seed_trend_buckets(to_naive_utc(start), to_naive_utc(end), interval)

    status_breakdown = OrderedDict(
        (status, {"status": status, "count": 0, "revenue": 0.0}) for status in ORDER_STATUSES
    )
    payment_breakdown: Dict[str, Dict] = {}
    products: Dict[str, Dict] = {}

    total_orders = 0
    gross_revenue = profit_revenue = loss_revenue = pipeline_revenue = 0.0
    cost_of_goods = 0.0
    total_units = sold_units = cancelled_units = 0
    cancelled_orders = 0

    for order in orders:
        status = str(order.get("status") or "pending")
        total = order_total(order)
        is_profit = status in PROFIT_STATUSES
        is_loss = status in LOSS_STATUSES

        total_orders += 1
        gross_revenue += total
        if is_profit:
            profit_revenue += total
        elif is_loss:
            loss_revenue += total
            cancelled_orders += 1
        elif status in PIPELINE_STATUSES:
            pipeline_revenue += total

        if status in status_breakdown:
            status_breakdown[status]["count"] += 1
            status_breakdown[status]["revenue"] += total

        payment_method = str(order.get("payment_method") or "Cash on Delivery")
        payment_entry = payment_breakdown.setdefault(
            payment_method, {"paymentMethod": payment_method, "count": 0, "revenue": 0.0}
        )
        payment_entry["count"] += 1
        payment_entry["revenue"] += total

        created_at = to_naive_utc(order.get("created_at"))
        if created_at:
            bucket_begin = bucket_start(created_at, interval)
            key = bucket_key(bucket_begin, interval)
            bucket = trend.get(key)
            if bucket is None:
                bucket = trend[key] = empty_bucket(bucket_begin, interval)
            bucket["orders"] += 1
            bucket["revenue"] += total
            if is_profit:
                bucket["profit"] += total
            elif is_loss:
                bucket["loss"] += total

        for item in order.get("order_items") or []:
            quantity = int(item.get("quantity") or 0)
            line_revenue = float(item.get("price") or 0) * quantity
            total_units += quantity
            if is_profit:
                sold_units += quantity
                cost_of_goods += float(item.get("purchase_price") or 0) * quantity
            if is_loss:
                cancelled_units += quantity

            product_id = str(item.get("product") or item.get("name") or "")
            product_entry = products.setdefault(
                product_id,
                {
                    "productId": product_id,
                    "name": item.get("name") or "Product",
                    "units": 0,
                    "revenue": 0.0,
                    "cancelledUnits": 0,
                    "cancelledRevenue": 0.0,
                },
            )
            if is_loss:
                product_entry["cancelledUnits"] += quantity
                product_entry["cancelledRevenue"] += line_revenue
            else:
                product_entry["units"] += quantity
                product_entry["revenue"] += line_revenue

    trend_series: List[Dict] = []
    for key in sorted(trend):
        bucket = trend[key]
        bucket["revenue"] = money(bucket["revenue"])
        bucket["profit"] = money(bucket["profit"])
        bucket["loss"] = money(bucket["loss"])
        bucket["netProfitLoss"] = money(bucket["profit"] - bucket["loss"])
        trend_series.append(bucket)

    statuses = []
    for entry in status_breakdown.values():
        statuses.append(
            {
                **entry,
                "revenue": money(entry["revenue"]),
                "percentage": percentage(entry["count"], total_orders),
            }
        )

    payments = sorted(
        (
            {
                **entry,
                "revenue": money(entry["revenue"]),
                "percentage": percentage(entry["count"], total_orders),
            }
            for entry in payment_breakdown.values()
        ),
        key=lambda entry: (-entry["revenue"], entry["paymentMethod"]),
    )

    top_products = sorted(
        (
            {
                **entry,
                "revenue": money(entry["revenue"]),
                "cancelledRevenue": money(entry["cancelledRevenue"]),
            }
            for entry in products.values()
        ),
        key=lambda entry: (-entry["revenue"], -entry["units"], entry["name"]),
    )[:TOP_PRODUCTS_LIMIT]

    return {
        "totals": {
            "totalOrders": total_orders,
            "grossRevenue": money(gross_revenue),
            "profitRevenue": money(profit_revenue),
            "lossRevenue": money(loss_revenue),
            "netProfitLoss": money(profit_revenue - loss_revenue),
            "pipelineRevenue": money(pipeline_revenue),
            "averageOrderValue": money(gross_revenue / total_orders) if total_orders else 0.0,
            "totalUnits": total_units,
            "soldUnits": sold_units,
            "cancelledUnits": cancelled_units,
            "cancellationRate": percentage(cancelled_orders, total_orders),
            "costOfGoods": money(cost_of_goods),
            "grossMargin": money(profit_revenue - cost_of_goods),
        },
        "trend": trend_series,
        "statusBreakdown": statuses,
        "paymentBreakdown": payments,
        "topProducts": top_products,
        "filters": dict(filters or {}),
    }
