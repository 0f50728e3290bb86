from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from .db import Base, SessionLocal, engine
from .models.customer import Customer
from .models.product import Product, ProductBarcode
from .models.promotion import PromotionRule, PromotionScope


def get_or_create(session: Session, model, defaults=None, **kwargs):
    inst = session.query(model).filter_by(**kwargs).first()
    if inst:
        return inst, False
    params = dict(kwargs)
    if defaults:
        params.update(defaults)
    inst = model(**params)
    session.add(inst)
    session.commit()
    session.refresh(inst)
    return inst, True


def seed(db: Session) -> dict:
    now = datetime.now()
    window = {"start_date": now - timedelta(days=1), "end_date": now + timedelta(days=365)}

    # Productos demo
    lab, _ = get_or_create(
        db,
        Product,
        sku="LAB-001",
        defaults={
            "name": "Labial Mate",
            "barcode": "7501234567890",
            "category": "cosmetics",
            "price": Decimal("10.00"),
            "cost": Decimal("4.00"),
            "stock_qty": 100,
        },
    )
    get_or_create(db, ProductBarcode, product_id=lab.id, code="LAB001ALT")
    soap, _ = get_or_create(
        db,
        Product,
        sku="JAB-002",
        defaults={
            "name": "Jabón Neutro",
            "barcode": "7501234567906",
            "category": "hygiene",
            "price": Decimal("3.00"),
            "stock_qty": 200,
        },
    )

    # Promos: 10% desde 5 unidades del labial, 3x2 en jabón, cupón de bienvenida
    tier, _ = get_or_create(
        db,
        PromotionRule,
        name="Labial 10% x5",
        defaults={"kind": "quantity_tier", "discount_value": Decimal("10"), "min_quantity": 5, **window},
    )
    get_or_create(db, PromotionScope, promotion_id=tier.id, product_id=lab.id)
    bxgy, _ = get_or_create(
        db,
        PromotionRule,
        name="Jabón 3x2",
        defaults={"kind": "buy_x_get_y", "buy_quantity": 3, "get_quantity": 1, **window},
    )
    get_or_create(db, PromotionScope, promotion_id=bxgy.id, product_id=soap.id)
    get_or_create(
        db,
        PromotionRule,
        name="Bienvenida",
        defaults={
            "kind": "coupon",
            "coupon_code": "WELCOME10",
            "discount_value": Decimal("10"),
            "usage_per_customer": 1,
            **window,
        },
    )

    cust, _ = get_or_create(db, Customer, email="demo@example.com", defaults={"name": "Cliente Demo"})
    return {"products": [lab.id, soap.id], "customer_id": cust.id, "promotions": [tier.id, bxgy.id]}


def main():
    Base.metadata.create_all(bind=engine)
    db: Session = SessionLocal()
    try:
        out = seed(db)
        print(f"Seed OK | products={out['products']} customer_id={out['customer_id']} barcode=7501234567890")
    finally:
        db.close()


if __name__ == "__main__":
    main()
