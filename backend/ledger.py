"""
Stock ledger: the only writer of Product.stock_quantity.

Each mutation validates its arguments, takes the per-product lock(s),
re-reads the rows and writes the record and a StockMovement row in one
commit. Stock itself only changes through a single guarded
``UPDATE ... SET stock_quantity = stock_quantity + :delta`` whose WHERE
clause refuses to go below zero, so separate processes sharing the
database cannot oversell either. A refused change raises before anything
is committed and any other error rolls the session back.
"""
import logging
import math
import threading
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional

from sqlalchemy import func, select as sa_select, update
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session, select

from config import CostPricePolicy
from errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from logging_config import LEDGER_LOGGER, log_event
from models import Customer, Product, Purchase, Sale, StockMovement

log = logging.getLogger(LEDGER_LOGGER)

SALE_FIELDS = {"product_id", "customer_id", "quantity", "unit_price"}
PURCHASE_FIELDS = {"product_id", "quantity", "unit_cost"}
PRODUCT_FIELDS = {"name", "cost_price", "price", "stock_quantity"}
# computed server-side; silently dropped when a client sends them
DERIVED_FIELDS = {"total_cost", "total_amount", "profit"}

__all__ = ["CostPricePolicy", "ProductLocks", "StockLedger", "product_locks"]


class ProductLocks:
    """One lock per product id, shared by every ledger in the process.

    Entries live only while someone holds or waits on them, so ids from
    failed lookups or deleted products do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, product_ids: List[str]) -> List[threading.Lock]:
        with self._guard:
            for pid in product_ids:
                self._users[pid] = self._users.get(pid, 0) + 1
            return [self._locks.setdefault(pid, threading.Lock()) for pid in product_ids]

    def _checkin(self, product_ids: List[str]) -> None:
        with self._guard:
            for pid in product_ids:
                self._users[pid] -= 1
                if not self._users[pid]:
                    del self._users[pid]
                    del self._locks[pid]

    @contextmanager
    def hold(self, *product_ids: str):
        # sorted so two multi-product updates cannot deadlock
        ids = sorted(set(product_ids))
        locks = self._checkout(ids)
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            self._checkin(ids)


product_locks = ProductLocks()


def _quantity(value, label: str = "Quantity") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{label} must be a whole number.")
    if value <= 0:
        raise ValidationError(f"{label} must be > 0.")
    return value


def _amount(value, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{label} must be a number.")
    if value < 0:
        raise ValidationError(f"{label} must be >= 0.")
    return float(value)


def _stock_level(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Stock quantity must be a whole number.")
    if value < 0:
        raise ValidationError("Stock quantity must be >= 0.")
    return value


def _editable(changes: dict, allowed: set) -> dict:
    unknown = set(changes) - allowed - DERIVED_FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}.")
    return {k: v for k, v in changes.items() if k in allowed and v is not None}


class StockLedger:
    def __init__(
        self,
        session: Session,
        cost_policy: CostPricePolicy = CostPricePolicy.LATEST,
        locks: Optional[ProductLocks] = None,
    ):
        self.session = session
        self.cost_policy = CostPricePolicy(cost_policy)
        self.locks = locks or product_locks

    # ---- helpers

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def _product(self, product_id: str) -> Product:
        product = self.session.get(Product, product_id, populate_existing=True, with_for_update=True)
        if not product:
            raise NotFoundError(f"Product {product_id} not found.")
        return product

    def _customer(self, customer_id: str) -> Customer:
        customer = self.session.get(Customer, customer_id)
        if not customer:
            raise NotFoundError(f"Customer {customer_id} not found.")
        return customer

    def _record(self, model, record_id: str):
        record = self.session.get(model, record_id, populate_existing=True)
        if not record:
            raise NotFoundError(f"{model.__name__} {record_id} not found.")
        return record

    @contextmanager
    def _hold_record(self, model, record_id: str, new_product_id: Optional[str] = None):
        # the record's product can change between the unlocked read and
        # acquiring the lock; retry until the locked set covers it
        while True:
            record = self._record(model, record_id)
            product_ids = {record.product_id, new_product_id or record.product_id}
            with self.locks.hold(*product_ids):
                record = self._record(model, record_id)
                if record.product_id in product_ids:
                    yield record
                    return

    def _shift(
        self,
        product: Product,
        delta: int,
        kind: str,
        reference_id: Optional[str] = None,
        note: Optional[str] = None,
        refusal: Optional[Callable[[int], str]] = None,
    ) -> None:
        """Apply ``delta`` to the stored stock and record the movement.

        ``refusal`` builds the error message from the stock actually on
        hand when the guarded update matches no row.
        """
        conn = self.session.connection()
        cols = Product.__table__.c
        stmt = (
            update(Product.__table__)
            .where(cols.product_id == product.product_id)
            .values(stock_quantity=cols.stock_quantity + delta)
        )
        if delta < 0:
            stmt = stmt.where(cols.stock_quantity >= -delta)
        applied = conn.execute(stmt).rowcount
        current = conn.execute(
            sa_select(cols.stock_quantity).where(cols.product_id == product.product_id)
        ).scalar_one()
        # keep the ORM from writing an absolute value back on flush
        set_committed_value(product, "stock_quantity", current)
        if not applied:
            if refusal is not None:
                message = refusal(current)
            else:
                message = f"Insufficient stock for {product.name}: requested {-delta}, available {current}."
            self._reject(product, message)
        self._move(product, kind, delta, reference_id, note)

    def _move(self, product: Product, kind: str, quantity: int, reference_id: Optional[str] = None, note: Optional[str] = None):
        self.session.add(StockMovement(
            product_id=product.product_id,
            type=kind,
            quantity=quantity,
            stock_after=product.stock_quantity,
            reference_id=reference_id,
            note=note,
        ))

    def _reject(self, product: Product, message: str):
        log_event(
            log, "stock_rejected", logging.WARNING,
            product_id=product.product_id, stock=product.stock_quantity, reason=message,
        )
        raise InsufficientStockError(message)

    def _apply_cost_policy(self, product: Product, quantity: int, unit_cost: float):
        # runs after the stock increment
        if self.cost_policy is CostPricePolicy.LATEST:
            product.cost_price = unit_cost
        elif self.cost_policy is CostPricePolicy.WEIGHTED_AVERAGE:
            old_stock = product.stock_quantity - quantity
            product.cost_price = (old_stock * product.cost_price + quantity * unit_cost) / product.stock_quantity

    def _is_latest_purchase(self, purchase: Purchase) -> bool:
        latest = self.session.exec(
            select(Purchase)
            .where(Purchase.product_id == purchase.product_id)
            .order_by(Purchase.created_at.desc(), Purchase.purchase_id.desc())
        ).first()
        return latest is not None and latest.purchase_id == purchase.purchase_id

    # ---- products

    def create_product(self, name: str, cost_price: float, price: float, stock_quantity: int = 0) -> Product:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Product name is required.")
        product = Product(
            name=name,
            cost_price=_amount(cost_price, "Cost price"),
            price=_amount(price, "Price"),
            stock_quantity=_stock_level(stock_quantity),
        )
        with self._transaction():
            self.session.add(product)
            self.session.flush()
            if product.stock_quantity:
                self._move(product, "initial", product.stock_quantity, note="opening stock")
        self.session.refresh(product)
        log_event(log, "product_created", product_id=product.product_id, stock=product.stock_quantity)
        return product

    def update_product(self, product_id: str, changes: dict) -> Product:
        changes = _editable(changes, PRODUCT_FIELDS)
        if "name" in changes:
            changes["name"] = changes["name"].strip()
            if not changes["name"]:
                raise ValidationError("Product name is required.")
        for field, label in (("cost_price", "Cost price"), ("price", "Price")):
            if field in changes:
                changes[field] = _amount(changes[field], label)
        new_stock = changes.pop("stock_quantity", None)
        if new_stock is not None:
            new_stock = _stock_level(new_stock)

        with self.locks.hold(product_id), self._transaction():
            product = self._product(product_id)
            for field, value in changes.items():
                setattr(product, field, value)
            if new_stock is not None and new_stock != product.stock_quantity:
                self._shift(product, new_stock - product.stock_quantity, "adjustment", note="manual stock edit")
        self.session.refresh(product)
        log_event(log, "product_updated", product_id=product.product_id, stock=product.stock_quantity)
        return product

    def delete_product(self, product_id: str) -> None:
        with self.locks.hold(product_id), self._transaction():
            product = self._product(product_id)
            in_use = (
                self.session.exec(select(Sale).where(Sale.product_id == product_id)).first()
                or self.session.exec(select(Purchase).where(Purchase.product_id == product_id)).first()
            )
            if in_use:
                raise ConflictError(f"Product {product.name} has sales or purchases and cannot be deleted.")
            for movement in self.session.exec(select(StockMovement).where(StockMovement.product_id == product_id)).all():
                self.session.delete(movement)
            self.session.flush()
            self.session.delete(product)
        log_event(log, "product_deleted", product_id=product_id)

    # ---- purchases

    def record_purchase(self, product_id: str, quantity: int, unit_cost: float) -> Purchase:
        quantity = _quantity(quantity)
        unit_cost = _amount(unit_cost, "Unit cost")

        with self.locks.hold(product_id), self._transaction():
            product = self._product(product_id)
            purchase = Purchase(
                product_id=product.product_id,
                quantity=quantity,
                unit_cost=unit_cost,
                total_cost=quantity * unit_cost,
            )
            self._shift(product, quantity, "purchase", purchase.purchase_id)
            self._apply_cost_policy(product, quantity, unit_cost)
            self.session.add(purchase)
        self.session.refresh(purchase)
        log_event(
            log, "purchase_recorded",
            purchase_id=purchase.purchase_id, product_id=product_id, qty=quantity,
            unit_cost=unit_cost, stock_after=product.stock_quantity,
        )
        return purchase

    def update_purchase(self, purchase_id: str, changes: dict) -> Purchase:
        changes = _editable(changes, PURCHASE_FIELDS)
        if "quantity" in changes:
            _quantity(changes["quantity"])
        if "unit_cost" in changes:
            changes["unit_cost"] = _amount(changes["unit_cost"], "Unit cost")

        with self._hold_record(Purchase, purchase_id, changes.get("product_id")) as purchase, self._transaction():
            old_product = self._product(purchase.product_id)
            new_product_id = changes.get("product_id", purchase.product_id)
            moved = new_product_id != purchase.product_id
            new_product = self._product(new_product_id) if moved else old_product
            quantity = changes.get("quantity", purchase.quantity)
            unit_cost = changes.get("unit_cost", purchase.unit_cost)

            if not moved:
                delta = quantity - purchase.quantity
                if delta:
                    self._shift(
                        old_product, delta, "purchase_update", purchase.purchase_id,
                        refusal=lambda stock: (
                            f"Insufficient stock for {old_product.name}: reducing this purchase removes "
                            f"{-delta} units but only {stock} are available."
                        ),
                    )
            else:
                self._shift(
                    old_product, -purchase.quantity, "purchase_reversal", purchase.purchase_id,
                    refusal=lambda stock: (
                        f"Insufficient stock for {old_product.name}: moving this purchase removes "
                        f"{purchase.quantity} units but only {stock} are available."
                    ),
                )
                self._shift(new_product, quantity, "purchase", purchase.purchase_id)

            cost_changed = moved or unit_cost != purchase.unit_cost
            purchase.product_id = new_product.product_id
            purchase.quantity = quantity
            purchase.unit_cost = unit_cost
            purchase.total_cost = quantity * unit_cost
            if cost_changed and self.cost_policy is CostPricePolicy.LATEST and self._is_latest_purchase(purchase):
                new_product.cost_price = unit_cost
        self.session.refresh(purchase)
        log_event(log, "purchase_updated", purchase_id=purchase_id, product_id=purchase.product_id, qty=purchase.quantity)
        return purchase

    def delete_purchase(self, purchase_id: str) -> None:
        with self._hold_record(Purchase, purchase_id) as purchase, self._transaction():
            product = self._product(purchase.product_id)
            self._shift(
                product, -purchase.quantity, "purchase_reversal", purchase.purchase_id,
                refusal=lambda stock: (
                    f"Insufficient stock for {product.name}: deleting this purchase removes "
                    f"{purchase.quantity} units but only {stock} are available."
                ),
            )
            self.session.delete(purchase)
        log_event(log, "purchase_deleted", purchase_id=purchase_id, stock_after=product.stock_quantity)

    # ---- sales

    def record_sale(self, product_id: str, customer_id: str, quantity: int, unit_price: float) -> Sale:
        quantity = _quantity(quantity)
        unit_price = _amount(unit_price, "Unit price")

        with self.locks.hold(product_id), self._transaction():
            product = self._product(product_id)
            self._customer(customer_id)
            sale = Sale(
                product_id=product.product_id,
                customer_id=customer_id,
                quantity=quantity,
                unit_price=unit_price,
                total_amount=quantity * unit_price,
                profit=(unit_price - product.cost_price) * quantity,
            )
            self._shift(product, -quantity, "sale", sale.sale_id)
            self.session.add(sale)
        self.session.refresh(sale)
        log_event(
            log, "sale_recorded",
            sale_id=sale.sale_id, product_id=product_id, qty=quantity,
            unit_price=unit_price, stock_after=product.stock_quantity,
        )
        return sale

    def update_sale(self, sale_id: str, changes: dict) -> Sale:
        changes = _editable(changes, SALE_FIELDS)
        if "quantity" in changes:
            _quantity(changes["quantity"])
        if "unit_price" in changes:
            changes["unit_price"] = _amount(changes["unit_price"], "Unit price")

        with self._hold_record(Sale, sale_id, changes.get("product_id")) as sale, self._transaction():
            old_product = self._product(sale.product_id)
            new_product_id = changes.get("product_id", sale.product_id)
            moved = new_product_id != sale.product_id
            new_product = self._product(new_product_id) if moved else old_product
            if "customer_id" in changes:
                self._customer(changes["customer_id"])
                sale.customer_id = changes["customer_id"]
            quantity = changes.get("quantity", sale.quantity)
            unit_price = changes.get("unit_price", sale.unit_price)

            if not moved:
                delta = sale.quantity - quantity
                if delta:
                    self._shift(
                        old_product, delta, "sale_update", sale.sale_id,
                        refusal=lambda stock: (
                            f"Insufficient stock for {old_product.name}: requested {quantity}, "
                            f"available {stock + sale.quantity}."
                        ),
                    )
            else:
                # take from the new product first so a refusal changes nothing
                self._shift(new_product, -quantity, "sale", sale.sale_id)
                self._shift(old_product, sale.quantity, "sale_reversal", sale.sale_id)

            sale.product_id = new_product.product_id
            sale.quantity = quantity
            sale.unit_price = unit_price
            sale.total_amount = quantity * unit_price
            sale.profit = (unit_price - new_product.cost_price) * quantity
        self.session.refresh(sale)
        log_event(log, "sale_updated", sale_id=sale_id, product_id=sale.product_id, qty=sale.quantity)
        return sale

    def delete_sale(self, sale_id: str) -> None:
        with self._hold_record(Sale, sale_id) as sale, self._transaction():
            product = self._product(sale.product_id)
            self._shift(product, sale.quantity, "sale_reversal", sale.sale_id)
            self.session.delete(sale)
        log_event(log, "sale_deleted", sale_id=sale_id, stock_after=product.stock_quantity)

    # ---- generic entry points

    def update_record(self, kind: str, record_id: str, changes: dict):
        if kind == "sale":
            return self.update_sale(record_id, changes)
        if kind == "purchase":
            return self.update_purchase(record_id, changes)
        raise ValidationError(f"Unknown record kind: {kind}.")

    def delete_record(self, kind: str, record_id: str) -> None:
        if kind == "sale":
            return self.delete_sale(record_id)
        if kind == "purchase":
            return self.delete_purchase(record_id)
        raise ValidationError(f"Unknown record kind: {kind}.")

    def movement_balance(self, product_id: str) -> int:
        total = self.session.exec(
            select(func.coalesce(func.sum(StockMovement.quantity), 0))
            .where(StockMovement.product_id == product_id)
        ).one()
        return int(total)
