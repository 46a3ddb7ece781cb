import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session, select, col, or_

from config import settings
from db import create_db_and_tables, get_session
from errors import AppError, ConflictError, NotFoundError, ValidationError
from ledger import StockLedger
from logging_config import request_id_var, setup_logging
from models import Customer, Product, Purchase, Sale, StockMovement
from schemas import (
    CustomerCreate, CustomerOut, CustomerUpdate,
    CustomerSummaryOut, DashboardMetricsOut, InventorySummaryOut, SalesSummaryOut,
    ProductCreate, ProductOut, ProductUpdate,
    PurchaseCreate, PurchaseOut, PurchaseUpdate,
    SaleCreate, SaleOut, SaleUpdate,
    StockMovementOut,
)
import summaries

log = logging.getLogger("inventory.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.logs_dir, settings.log_level)
    create_db_and_tables()
    log.info("startup cost_policy=%s low_stock_threshold=%s", settings.cost_price_policy.value, settings.low_stock_threshold)
    yield


app = FastAPI(title="Inventory Dashboard API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    log.warning("request_failed %s %s error=%s detail=%s", request.method, request.url.path, exc.code, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "error": exc.code})


def get_ledger(session: Session = Depends(get_session)) -> StockLedger:
    return StockLedger(session, cost_policy=settings.cost_price_policy)


def get_or_404(session: Session, model, record_id: str):
    record = session.get(model, record_id)
    if not record:
        raise NotFoundError(f"{model.__name__} {record_id} not found.")
    return record


@app.get("/health")
def health():
    return {"status": "ok"}


# Products
@app.get("/products", response_model=List[ProductOut])
def list_products(search: Optional[str] = None, session: Session = Depends(get_session)):
    query = select(Product).order_by(Product.name)
    if search:
        query = query.where(col(Product.name).ilike(f"%{search}%"))
    return [ProductOut.model_validate(p) for p in session.exec(query).all()]


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str, session: Session = Depends(get_session)):
    return ProductOut.model_validate(get_or_404(session, Product, product_id))


@app.post("/products", response_model=ProductOut)
def create_product(p: ProductCreate, ledger: StockLedger = Depends(get_ledger)):
    product = ledger.create_product(p.name, p.cost_price, p.price, p.stock_quantity)
    return ProductOut.model_validate(product)


@app.put("/products/{product_id}", response_model=ProductOut)
def update_product(product_id: str, p: ProductUpdate, ledger: StockLedger = Depends(get_ledger)):
    product = ledger.update_product(product_id, p.model_dump(exclude_none=True))
    return ProductOut.model_validate(product)


@app.delete("/products/{product_id}", status_code=204)
def delete_product(product_id: str, ledger: StockLedger = Depends(get_ledger)):
    ledger.delete_product(product_id)
    return Response(status_code=204)


# Purchases
@app.get("/purchases", response_model=List[PurchaseOut])
def list_purchases(session: Session = Depends(get_session)):
    purchases = session.exec(select(Purchase).order_by(col(Purchase.created_at).desc())).all()
    return [PurchaseOut.model_validate(p) for p in purchases]


@app.get("/purchases/{purchase_id}", response_model=PurchaseOut)
def get_purchase(purchase_id: str, session: Session = Depends(get_session)):
    return PurchaseOut.model_validate(get_or_404(session, Purchase, purchase_id))


@app.post("/purchases", response_model=PurchaseOut)
def create_purchase(p: PurchaseCreate, ledger: StockLedger = Depends(get_ledger)):
    purchase = ledger.record_purchase(p.product_id, p.quantity, p.unit_cost)
    return PurchaseOut.model_validate(purchase)


@app.put("/purchases/{purchase_id}", response_model=PurchaseOut)
def update_purchase(purchase_id: str, p: PurchaseUpdate, ledger: StockLedger = Depends(get_ledger)):
    purchase = ledger.update_record("purchase", purchase_id, p.model_dump(exclude_none=True))
    return PurchaseOut.model_validate(purchase)


@app.delete("/purchases/{purchase_id}", status_code=204)
def delete_purchase(purchase_id: str, ledger: StockLedger = Depends(get_ledger)):
    ledger.delete_record("purchase", purchase_id)
    return Response(status_code=204)


# Customers
@app.get("/customers", response_model=List[CustomerOut])
def list_customers(search: Optional[str] = None, session: Session = Depends(get_session)):
    query = select(Customer).order_by(Customer.name)
    if search:
        term = f"%{search}%"
        query = query.where(or_(col(Customer.name).ilike(term), col(Customer.phone).ilike(term)))
    return [CustomerOut.model_validate(c) for c in session.exec(query).all()]


@app.get("/customers/{customer_id}", response_model=CustomerOut)
def get_customer(customer_id: str, session: Session = Depends(get_session)):
    return CustomerOut.model_validate(get_or_404(session, Customer, customer_id))


@app.post("/customers", response_model=CustomerOut)
def create_customer(c: CustomerCreate, session: Session = Depends(get_session)):
    name = c.name.strip()
    if not name:
        raise ValidationError("Customer name is required.")
    customer = Customer(name=name, phone=c.phone, address=c.address)
    session.add(customer); session.commit(); session.refresh(customer)
    return CustomerOut.model_validate(customer)


@app.put("/customers/{customer_id}", response_model=CustomerOut)
def update_customer(customer_id: str, c: CustomerUpdate, session: Session = Depends(get_session)):
    customer = get_or_404(session, Customer, customer_id)
    changes = c.model_dump(exclude_unset=True)
    if "name" in changes:
        changes["name"] = (changes["name"] or "").strip()
        if not changes["name"]:
            raise ValidationError("Customer name is required.")
    for field, value in changes.items():
        setattr(customer, field, value)
    session.add(customer); session.commit(); session.refresh(customer)
    return CustomerOut.model_validate(customer)


@app.delete("/customers/{customer_id}", status_code=204)
def delete_customer(customer_id: str, session: Session = Depends(get_session)):
    customer = get_or_404(session, Customer, customer_id)
    if session.exec(select(Sale).where(Sale.customer_id == customer_id)).first():
        raise ConflictError(f"Customer {customer.name} has sales and cannot be deleted.")
    session.delete(customer); session.commit()
    return Response(status_code=204)


# Sales
@app.get("/sales", response_model=List[SaleOut])
def list_sales(session: Session = Depends(get_session)):
    sales = session.exec(select(Sale).order_by(col(Sale.created_at).desc())).all()
    return [SaleOut.model_validate(s) for s in sales]


@app.get("/sales/{sale_id}", response_model=SaleOut)
def get_sale(sale_id: str, session: Session = Depends(get_session)):
    return SaleOut.model_validate(get_or_404(session, Sale, sale_id))


@app.post("/sales", response_model=SaleOut)
def create_sale(s: SaleCreate, ledger: StockLedger = Depends(get_ledger)):
    sale = ledger.record_sale(s.product_id, s.customer_id, s.quantity, s.unit_price)
    return SaleOut.model_validate(sale)


@app.put("/sales/{sale_id}", response_model=SaleOut)
def update_sale(sale_id: str, s: SaleUpdate, ledger: StockLedger = Depends(get_ledger)):
    sale = ledger.update_record("sale", sale_id, s.model_dump(exclude_none=True))
    return SaleOut.model_validate(sale)


@app.delete("/sales/{sale_id}", status_code=204)
def delete_sale(sale_id: str, ledger: StockLedger = Depends(get_ledger)):
    ledger.delete_record("sale", sale_id)
    return Response(status_code=204)


# Dashboard & summaries
@app.get("/dashboard", response_model=DashboardMetricsOut)
def dashboard(session: Session = Depends(get_session)):
    return summaries.dashboard_metrics(session, settings.low_stock_threshold)


@app.get("/summary/sales", response_model=List[SalesSummaryOut])
def summary_sales(session: Session = Depends(get_session)):
    return [summaries.sales_summary(session)]


@app.get("/summary/inventory", response_model=List[InventorySummaryOut])
def summary_inventory(session: Session = Depends(get_session)):
    return [summaries.inventory_summary(session, settings.low_stock_threshold)]


@app.get("/summary/customers", response_model=List[CustomerSummaryOut])
def summary_customers(session: Session = Depends(get_session)):
    return [summaries.customer_summary(session)]


# Stock movements & history
@app.get("/stock/movements", response_model=List[StockMovementOut])
def list_movements(session: Session = Depends(get_session)):
    movements = session.exec(select(StockMovement).order_by(col(StockMovement.created_at).desc())).all()
    return [StockMovementOut.model_validate(m) for m in movements]


@app.get("/stock/product/{product_id}/movements", response_model=List[StockMovementOut])
def product_movements(product_id: str, session: Session = Depends(get_session)):
    get_or_404(session, Product, product_id)
    movements = session.exec(
        select(StockMovement).where(StockMovement.product_id == product_id).order_by(col(StockMovement.created_at))
    ).all()
    return [StockMovementOut.model_validate(m) for m in movements]


# Inventory low stock
@app.get("/inventory/low", response_model=List[ProductOut])
def low_stock(
    threshold: Optional[int] = None,
    include_out_of_stock: bool = Query(False, alias="includeOutOfStock"),
    session: Session = Depends(get_session),
):
    if threshold is None:
        threshold = settings.low_stock_threshold
    if threshold < 0:
        raise HTTPException(status_code=400, detail="threshold must be >= 0")
    query = select(Product).where(Product.stock_quantity <= threshold)
    if not include_out_of_stock:
        query = query.where(Product.stock_quantity > 0)
    products = session.exec(query.order_by(Product.stock_quantity, Product.name)).all()
    return [ProductOut.model_validate(p) for p in products]


# Inventory report export
@app.get("/export/products")
def export_products(
    report: str = "full",
    format: str = "csv",
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    session: Session = Depends(get_session),
):
    df = summaries.inventory_report(session, report, settings.low_stock_threshold, date_from, date_to)
    payload, media_type, extension = summaries.export_report(df, format, sheet_name=report)
    filename = f"inventory-{report}.{extension}"
    return Response(payload, media_type=media_type, headers={"Content-Disposition": f"attachment; filename={filename}"})
