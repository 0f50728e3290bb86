from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import ValidationError
from ..core.schemas import CartItemIn, CouponIn, CustomerIn, QuantityIn
from ..db import get_db
from ..services.catalog import CustomerDirectory, SqlCatalog
from ..services.promotions import customer_usage
from ..services.terminal import cart_manager, terminals

router = APIRouter(prefix="/terminals/{tid}/cart", tags=["cart"])


@router.get("")
def get_cart(tid: str, db: Session = Depends(get_db)):
    s = terminals.get(tid)
    with s.lock:
        return s.cart_view(cart_manager(db, s.cart))


@router.delete("")
def clear_cart(tid: str, db: Session = Depends(get_db)):
    s = terminals.get(tid)
    with s.lock:
        s.clear()
        return s.cart_view(cart_manager(db, s.cart))


@router.post("/items")
def add_item(tid: str, payload: CartItemIn, db: Session = Depends(get_db)):
    s = terminals.get(tid)
    with s.lock:
        s.ensure_cart_mutable()
        catalog = SqlCatalog(db, settings.stock_policy)
        if payload.item_id is not None:
            item = catalog.get(payload.item_id)
        elif payload.code:
            item = catalog.lookup(payload.code)
        else:
            raise ValidationError("CODE_REQUIRED", "code or item_id required")
        manager = cart_manager(db, s.cart)
        manager.add_item(item, payload.qty)
        return s.cart_view(manager)


@router.put("/items/{item_id}")
def set_quantity(tid: str, item_id: int, payload: QuantityIn, db: Session = Depends(get_db)):
    s = terminals.get(tid)
    with s.lock:
        s.ensure_cart_mutable()
        manager = cart_manager(db, s.cart)
        manager.set_quantity(item_id, payload.qty)
        return s.cart_view(manager)


@router.delete("/items/{item_id}")
def remove_item(tid: str, item_id: int, db: Session = Depends(get_db)):
    s = terminals.get(tid)
    with s.lock:
        s.ensure_cart_mutable()
        manager = cart_manager(db, s.cart)
        manager.remove_item(item_id)
        return s.cart_view(manager)


@router.put("/customer")
def set_customer(tid: str, payload: CustomerIn, db: Session = Depends(get_db)):
    s = terminals.get(tid)
    with s.lock:
        s.ensure_cart_mutable()
        if payload.customer_id is not None:
            CustomerDirectory(db).get(payload.customer_id)
        manager = cart_manager(db, s.cart)
        manager.set_customer(payload.customer_id, customer_usage(db, payload.customer_id))
        return s.cart_view(manager)


@router.post("/coupon")
def apply_coupon(tid: str, payload: CouponIn, db: Session = Depends(get_db)):
    s = terminals.get(tid)
    with s.lock:
        s.ensure_cart_mutable()
        manager = cart_manager(db, s.cart)
        manager.apply_coupon(payload.code)
        return s.cart_view(manager)


@router.delete("/coupon")
def remove_coupon(tid: str, db: Session = Depends(get_db)):
    s = terminals.get(tid)
    with s.lock:
        s.ensure_cart_mutable()
        manager = cart_manager(db, s.cart)
        manager.remove_coupon()
        return s.cart_view(manager)
