import os

# base en memoria antes de importar pos_engine (settings se lee al importar)
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pos_engine.db import Base, get_db
from pos_engine.models import drawer as _drawer_models  # noqa: F401
from pos_engine.models import sale as _sale_models  # noqa: F401
from pos_engine.models import scan as _scan_models  # noqa: F401
from pos_engine.models.customer import Customer
from pos_engine.models.product import Product, ProductBarcode
from pos_engine.models.promotion import PromotionRule, PromotionScope
from pos_engine.services.cart import Cart, CartManager, FlatRateTax
from pos_engine.services.coupons import CouponValidator
from pos_engine.services.promotions import PromotionResolver, customer_usage, load_rules


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def make_product(db):
    counter = {"n": 0}

    def _make(price="10.00", stock=100, category=None, barcode=None, sku=None, alt_codes=(), **kw):
        counter["n"] += 1
        n = counter["n"]
        p = Product(
            sku=sku or f"SKU-{n:03d}",
            name=kw.pop("name", f"Producto {n}"),
            barcode=barcode or f"7890000000{n:03d}",
            category=category,
            price=Decimal(price),
            stock_qty=stock,
            **kw,
        )
        db.add(p)
        db.flush()
        for code in alt_codes:
            db.add(ProductBarcode(product_id=p.id, code=code))
        db.commit()
        db.refresh(p)
        return p

    return _make


@pytest.fixture
def make_rule(db):
    def _make(kind="percentage", discount_value="10", product_ids=(), categories=(), **kw):
        now = datetime.now()
        kw.setdefault("start_date", now - timedelta(days=1))
        kw.setdefault("end_date", now + timedelta(days=1))
        kw.setdefault("name", f"{kind} {discount_value}")
        r = PromotionRule(kind=kind, discount_value=Decimal(str(discount_value)), **kw)
        db.add(r)
        db.flush()
        for pid in product_ids:
            db.add(PromotionScope(promotion_id=r.id, product_id=pid))
        for cat in categories:
            db.add(PromotionScope(promotion_id=r.id, category=cat))
        db.commit()
        db.refresh(r)
        return r

    return _make


@pytest.fixture
def make_customer(db):
    def _make(name="Cliente"):
        c = Customer(name=name)
        db.add(c)
        db.commit()
        db.refresh(c)
        return c

    return _make


@pytest.fixture
def build_manager(db):
    """CartManager over the rules currently stored, tax 0 unless given."""

    def _build(cart=None, tax="0", clock=None):
        cart = cart or Cart()
        rules = load_rules(db)
        resolver = PromotionResolver(rules, clock=clock) if clock else PromotionResolver(rules)
        return CartManager(
            cart,
            resolver,
            FlatRateTax(Decimal(tax)),
            usage=customer_usage(db, cart.customer_id),
            coupon_validator=CouponValidator(db, clock=clock) if clock else CouponValidator(db),
        )

    return _build


@pytest.fixture
def client(session_factory):
    from pos_engine.main import app
    from pos_engine.services.terminal import terminals

    def override_get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = override_get_db
    terminals.reset()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    terminals.reset()
