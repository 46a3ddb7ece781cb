"""
Request/response schemas.

JSON uses camelCase (``productId``, ``stockQuantity``); attributes stay
snake_case. Request bodies reject unknown fields. ``totalCost``,
``totalAmount`` and ``profit`` are accepted for client compatibility but
the server always recomputes them.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class RequestModel(CamelModel):
    model_config = ConfigDict(extra="forbid")


# Products

class ProductCreate(RequestModel):
    name: str = Field(min_length=1)
    cost_price: float = Field(ge=0)
    price: float = Field(ge=0)
    stock_quantity: int = Field(0, ge=0)


class ProductUpdate(RequestModel):
    name: Optional[str] = Field(None, min_length=1)
    cost_price: Optional[float] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0)
    stock_quantity: Optional[int] = Field(None, ge=0)


class ProductOut(CamelModel):
    product_id: str
    name: str
    cost_price: float
    price: float
    stock_quantity: int
    created_at: datetime


# Customers

class CustomerCreate(RequestModel):
    name: str = Field(min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = None


class CustomerUpdate(RequestModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = None


class CustomerOut(CamelModel):
    customer_id: str
    name: str
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: datetime


# Purchases

class PurchaseCreate(RequestModel):
    product_id: str
    quantity: int = Field(gt=0)
    unit_cost: float = Field(ge=0)
    total_cost: Optional[float] = None


class PurchaseUpdate(RequestModel):
    product_id: Optional[str] = None
    quantity: Optional[int] = Field(None, gt=0)
    unit_cost: Optional[float] = Field(None, ge=0)
    total_cost: Optional[float] = None


class PurchaseOut(CamelModel):
    purchase_id: str
    product_id: str
    quantity: int
    unit_cost: float
    total_cost: float
    created_at: datetime
    product: Optional[ProductOut] = None


# Sales

class SaleCreate(RequestModel):
    product_id: str
    customer_id: str
    quantity: int = Field(gt=0)
    unit_price: float = Field(ge=0)
    total_amount: Optional[float] = None
    profit: Optional[float] = None


class SaleUpdate(RequestModel):
    product_id: Optional[str] = None
    customer_id: Optional[str] = None
    quantity: Optional[int] = Field(None, gt=0)
    unit_price: Optional[float] = Field(None, ge=0)
    total_amount: Optional[float] = None
    profit: Optional[float] = None


class SaleOut(CamelModel):
    sale_id: str
    product_id: str
    customer_id: str
    quantity: int
    unit_price: float
    total_amount: float
    profit: float
    created_at: datetime
    product: Optional[ProductOut] = None
    customer: Optional[CustomerOut] = None


class StockMovementOut(CamelModel):
    movement_id: str
    product_id: str
    type: str
    quantity: int
    stock_after: int
    reference_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime


# Dashboard

class SalesSummaryOut(CamelModel):
    id: str
    total_revenue: float
    total_profit: float
    sales_count: int
    change_percent: Optional[float] = None
    created_at: datetime


class InventorySummaryOut(CamelModel):
    id: str
    total_products: int
    stock_value: float
    low_stock_items: int
    out_of_stock_items: int
    created_at: datetime


class CustomerSummaryOut(CamelModel):
    id: str
    total_customers: int
    new_customers: int
    repeat_customers: int
    change_percent: Optional[float] = None
    created_at: datetime


class DashboardMetricsOut(CamelModel):
    sales_summary: List[SalesSummaryOut]
    inventory_summary: List[InventorySummaryOut]
    customer_summary: List[CustomerSummaryOut]
    top_products: List[ProductOut]
    recent_sales: List[SaleOut]
    recent_purchases: List[PurchaseOut]
