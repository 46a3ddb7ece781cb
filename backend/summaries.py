"""
Dashboard aggregates and the inventory report.

Reads only; nothing here takes product locks, so figures may trail an
in-flight mutation by one commit. Timestamps are compared as aware UTC.
"""
import io
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

import pandas as pd
from sqlmodel import Session, select

from errors import ValidationError
from models import Customer, Product, Purchase, Sale, as_utc, utcnow
from schemas import (
    CustomerSummaryOut,
    DashboardMetricsOut,
    InventorySummaryOut,
    ProductOut,
    PurchaseOut,
    SaleOut,
    SalesSummaryOut,
)

WINDOW = timedelta(days=30)
REPORT_TYPES = ("full", "lowStock", "highValue", "summary")
REPORT_COLUMNS = ["productId", "name", "costPrice", "price", "stockQuantity", "stockValue", "status", "createdAt"]
SUMMARY_COLUMNS = [
    "generatedAt", "dateFrom", "dateTo", "totalProducts", "totalUnits", "stockValue",
    "lowStockItems", "outOfStockItems", "unitsPurchased", "purchaseCost", "unitsSold", "revenue", "profit",
]
EXPORT_FORMATS = {
    "csv": ("text/csv", "csv"),
    "excel": ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "xlsx"),
}


def _change_percent(current: float, previous: float) -> Optional[float]:
    if not previous:
        return None
    return round((current - previous) / previous * 100, 2)


def _windows(now: datetime):
    return now - WINDOW, now - 2 * WINDOW


def is_low_stock(quantity: int, threshold: int) -> bool:
    return 0 < quantity <= threshold


def stock_status(quantity: int, threshold: int) -> str:
    if quantity == 0:
        return "Out of Stock"
    if quantity <= threshold:
        return "Low Stock"
    return "In Stock"


def sales_summary(session: Session, now: Optional[datetime] = None) -> SalesSummaryOut:
    now = as_utc(now) or utcnow()
    current_start, previous_start = _windows(now)
    sales = session.exec(select(Sale)).all()

    current = sum(s.total_amount for s in sales if as_utc(s.created_at) >= current_start)
    previous = sum(s.total_amount for s in sales if previous_start <= as_utc(s.created_at) < current_start)
    return SalesSummaryOut(
        id=f"sales-{now.date().isoformat()}",
        total_revenue=sum(s.total_amount for s in sales),
        total_profit=sum(s.profit for s in sales),
        sales_count=len(sales),
        change_percent=_change_percent(current, previous),
        created_at=now,
    )


def inventory_summary(session: Session, threshold: int, now: Optional[datetime] = None) -> InventorySummaryOut:
    now = as_utc(now) or utcnow()
    products = session.exec(select(Product)).all()
    return InventorySummaryOut(
        id=f"inventory-{now.date().isoformat()}",
        total_products=len(products),
        stock_value=sum(p.price * p.stock_quantity for p in products),
        low_stock_items=sum(1 for p in products if is_low_stock(p.stock_quantity, threshold)),
        out_of_stock_items=sum(1 for p in products if p.stock_quantity == 0),
        created_at=now,
    )


def customer_summary(session: Session, now: Optional[datetime] = None) -> CustomerSummaryOut:
    now = as_utc(now) or utcnow()
    current_start, previous_start = _windows(now)
    customers = session.exec(select(Customer)).all()
    sales_per_customer = Counter(session.exec(select(Sale.customer_id)).all())

    new = sum(1 for c in customers if as_utc(c.created_at) >= current_start)
    previous = sum(1 for c in customers if previous_start <= as_utc(c.created_at) < current_start)
    return CustomerSummaryOut(
        id=f"customers-{now.date().isoformat()}",
        total_customers=len(customers),
        new_customers=new,
        repeat_customers=sum(1 for count in sales_per_customer.values() if count >= 2),
        change_percent=_change_percent(new, previous),
        created_at=now,
    )


def top_products(session: Session, limit: int = 5) -> List[Product]:
    """Best sellers by units sold, ties broken by stock value."""
    sold = Counter()
    for product_id, quantity in session.exec(select(Sale.product_id, Sale.quantity)).all():
        sold[product_id] += quantity
    products = session.exec(select(Product)).all()
    ranked = sorted(products, key=lambda p: (sold[p.product_id], p.price * p.stock_quantity), reverse=True)
    return ranked[:limit]


def recent_sales(session: Session, limit: int = 10) -> List[Sale]:
    return session.exec(select(Sale).order_by(Sale.created_at.desc()).limit(limit)).all()


def recent_purchases(session: Session, limit: int = 10) -> List[Purchase]:
    return session.exec(select(Purchase).order_by(Purchase.created_at.desc()).limit(limit)).all()


def dashboard_metrics(session: Session, threshold: int) -> DashboardMetricsOut:
    now = utcnow()
    return DashboardMetricsOut(
        sales_summary=[sales_summary(session, now)],
        inventory_summary=[inventory_summary(session, threshold, now)],
        customer_summary=[customer_summary(session, now)],
        top_products=[ProductOut.model_validate(p) for p in top_products(session)],
        recent_sales=[SaleOut.model_validate(s) for s in recent_sales(session)],
        recent_purchases=[PurchaseOut.model_validate(p) for p in recent_purchases(session)],
    )


# ---- inventory report

def _date_bounds(date_from: Optional[date], date_to: Optional[date]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Inclusive calendar days as a half-open UTC range."""
    if date_from and date_to and date_from > date_to:
        raise ValidationError(f"dateFrom {date_from} is after dateTo {date_to}.")
    start = datetime.combine(date_from, time.min, tzinfo=timezone.utc) if date_from else None
    end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc) if date_to else None
    return start, end


def _in_range(query, column, start, end):
    if start is not None:
        query = query.where(column >= start)
    if end is not None:
        query = query.where(column < end)
    return query


def _summary_frame(session: Session, threshold: int, start, end, date_from, date_to) -> pd.DataFrame:
    inventory = inventory_summary(session, threshold)
    purchases = session.exec(_in_range(select(Purchase), Purchase.created_at, start, end)).all()
    sales = session.exec(_in_range(select(Sale), Sale.created_at, start, end)).all()
    products = session.exec(select(Product)).all()
    row = {
        "generatedAt": inventory.created_at.isoformat(),
        "dateFrom": date_from.isoformat() if date_from else "",
        "dateTo": date_to.isoformat() if date_to else "",
        "totalProducts": inventory.total_products,
        "totalUnits": sum(p.stock_quantity for p in products),
        "stockValue": inventory.stock_value,
        "lowStockItems": inventory.low_stock_items,
        "outOfStockItems": inventory.out_of_stock_items,
        "unitsPurchased": sum(p.quantity for p in purchases),
        "purchaseCost": sum(p.total_cost for p in purchases),
        "unitsSold": sum(s.quantity for s in sales),
        "revenue": sum(s.total_amount for s in sales),
        "profit": sum(s.profit for s in sales),
    }
    return pd.DataFrame([row], columns=SUMMARY_COLUMNS)


def inventory_report(
    session: Session,
    report: str,
    threshold: int,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> pd.DataFrame:
    """Build one of the report frames.

    The date range selects products by creation date for the product
    listings; for ``summary`` it bounds the purchase and sale totals.
    """
    if report not in REPORT_TYPES:
        raise ValidationError(f"Unknown report type: {report}. Use one of {', '.join(REPORT_TYPES)}.")
    start, end = _date_bounds(date_from, date_to)
    if report == "summary":
        return _summary_frame(session, threshold, start, end, date_from, date_to)

    query = _in_range(select(Product), Product.created_at, start, end).order_by(Product.name)
    products = session.exec(query).all()
    df = pd.DataFrame(
        [
            {
                "productId": p.product_id,
                "name": p.name,
                "costPrice": p.cost_price,
                "price": p.price,
                "stockQuantity": p.stock_quantity,
                "stockValue": p.price * p.stock_quantity,
                "status": stock_status(p.stock_quantity, threshold),
                "createdAt": as_utc(p.created_at).isoformat(),
            }
            for p in products
        ],
        columns=REPORT_COLUMNS,
    )
    if report == "lowStock":
        df = df[(df["stockQuantity"] > 0) & (df["stockQuantity"] <= threshold)]
    elif report == "highValue":
        df = df.sort_values("stockValue", ascending=False).head(10)
    return df.reset_index(drop=True)


def export_report(df: pd.DataFrame, fmt: str, sheet_name: str = "Inventory") -> Tuple[bytes, str, str]:
    """Serialize a report frame; returns (payload, media type, file extension)."""
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"Unknown export format: {fmt}. Use one of {', '.join(EXPORT_FORMATS)}.")
    media_type, extension = EXPORT_FORMATS[fmt]
    if fmt == "excel":
        buffer = io.BytesIO()
        df.to_excel(buffer, index=False, sheet_name=sheet_name[:31], engine="openpyxl")
        return buffer.getvalue(), media_type, extension
    return df.to_csv(index=False).encode("utf-8"), media_type, extension
