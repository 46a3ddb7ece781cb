import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field, Relationship


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values; convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    # SQLite keeps no offset, so values come back naive; they were written as UTC
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


def created_at_field():
    return Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)


class Product(SQLModel, table=True):
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_product_stock_non_negative"),
    )

    product_id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True, nullable=False)
    cost_price: float = 0.0
    price: float = 0.0
    stock_quantity: int = 0
    created_at: datetime = created_at_field()


class Customer(SQLModel, table=True):
    customer_id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True, nullable=False)
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: datetime = created_at_field()


class Purchase(SQLModel, table=True):
    purchase_id: str = Field(default_factory=new_id, primary_key=True)
    product_id: str = Field(foreign_key="product.product_id", index=True)
    quantity: int
    unit_cost: float
    total_cost: float
    created_at: datetime = created_at_field()

    product: Optional[Product] = Relationship()


class Sale(SQLModel, table=True):
    sale_id: str = Field(default_factory=new_id, primary_key=True)
    product_id: str = Field(foreign_key="product.product_id", index=True)
    customer_id: str = Field(foreign_key="customer.customer_id", index=True)
    quantity: int
    unit_price: float
    total_amount: float
    profit: float
    created_at: datetime = created_at_field()

    product: Optional[Product] = Relationship()
    customer: Optional[Customer] = Relationship()


class StockMovement(SQLModel, table=True):
    """One row per change to a product's stock; quantity is the signed delta."""

    movement_id: str = Field(default_factory=new_id, primary_key=True)
    product_id: str = Field(foreign_key="product.product_id", index=True)
    type: str = "adjustment"
    quantity: int = 0
    stock_after: int = 0
    reference_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime = created_at_field()
