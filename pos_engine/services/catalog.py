from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..core.errors import NotFound, TransientError, ValidationError
from ..core.money import money
from ..models.customer import Customer
from ..models.product import Product, ProductBarcode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogItem:
    id: int
    sku: str
    name: str
    barcode: Optional[str]
    category: Optional[str]
    unit_price: Decimal
    unit_cost: Optional[Decimal]
    is_active: bool
    stock_qty: int

    @classmethod
    def from_product(cls, p: Product) -> "CatalogItem":
        return cls(
            id=p.id,
            sku=p.sku,
            name=p.name,
            barcode=p.barcode,
            category=p.category,
            unit_price=money(p.price),
            unit_cost=money(p.cost) if p.cost is not None else None,
            is_active=bool(p.is_active),
            stock_qty=int(p.stock_qty or 0),
        )

    def as_dict(self) -> dict:
        return {
            "product_id": self.id,
            "sku": self.sku,
            "name": self.name,
            "barcode": self.barcode,
            "category": self.category,
            "price": str(self.unit_price),
            "stock_qty": self.stock_qty,
        }


class SqlCatalog:
    """Catalog collaborator backed by the ``product`` tables.

    ``lookup`` never writes. ``decrement_stock`` runs inside the caller's
    transaction so the Sale Finalizer can roll it back.
    """

    def __init__(self, db: Session, stock_policy: str = "enforce"):
        self.db = db
        self.stock_policy = stock_policy

    def lookup(self, code: str) -> CatalogItem:
        code = (code or "").strip()
        if not code:
            raise NotFound("PRODUCT_NOT_FOUND", "empty code")
        try:
            p = self._find(code)
        except OperationalError as e:
            logger.warning("catalog lookup failed for %s: %s", code, e)
            raise TransientError("CATALOG_UNAVAILABLE") from e
        if p is None or not p.is_active:
            logger.info("product not found: %s", code)
            raise NotFound("PRODUCT_NOT_FOUND", f"product not found: {code}")
        return CatalogItem.from_product(p)

    def get(self, item_id: int) -> CatalogItem:
        p = self.db.get(Product, item_id)
        if p is None or not p.is_active:
            raise NotFound("PRODUCT_NOT_FOUND", f"product not found: {item_id}")
        return CatalogItem.from_product(p)

    def _find(self, code: str) -> Optional[Product]:
        # barcode principal primero; el más reciente gana si se repite en el histórico
        p = (
            self.db.query(Product)
            .filter(Product.barcode == code, Product.is_active.is_(True))
            .order_by(Product.id.desc())
            .first()
        )
        if p:
            return p
        alt = self.db.query(ProductBarcode).filter(ProductBarcode.code == code).first()
        if alt:
            return self.db.get(Product, alt.product_id)
        p = self.db.query(Product).filter(Product.sku == code).first()
        if p:
            return p
        if code.isdigit() and len(code) < 8:
            return self.db.get(Product, int(code))
        return None

    def decrement_stock(self, item_id: int, qty: int) -> None:
        stmt = update(Product).where(Product.id == item_id)
        if self.stock_policy == "enforce":
            stmt = stmt.where(Product.stock_qty >= qty)
        res = self.db.execute(
            stmt.values(stock_qty=Product.stock_qty - qty).execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ValidationError("INSUFFICIENT_STOCK", f"insufficient stock for product {item_id}")


class CustomerDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get(self, customer_id: int) -> Customer:
        c = self.db.get(Customer, customer_id)
        if c is None or not c.is_active:
            raise NotFound("CUSTOMER_NOT_FOUND", f"customer not found: {customer_id}")
        return c
