from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import ValidationError
from ..core.schemas import TenderIn
from ..db import get_db
from ..services.catalog import SqlCatalog
from ..services.finalizer import SaleFinalizer
from ..services.tenders import TenderEntry
from ..services.terminal import cart_manager, terminals

router = APIRouter(prefix="/terminals/{tid}", tags=["checkout"])


@router.post("/tenders")
def add_tender(tid: str, payload: TenderIn, db: Session = Depends(get_db)):
    s = terminals.get(tid)
    with s.lock:
        if s.cart.is_empty:
            raise ValidationError("CART_EMPTY", "nothing to pay")
        manager = cart_manager(db, s.cart)
        collector = s.tenders(manager)
        index = collector.add_tender(TenderEntry(**payload.model_dump()))
        return {"index": index, **collector.as_dict()}


@router.delete("/tenders/{index}")
def remove_tender(tid: str, index: int, db: Session = Depends(get_db)):
    s = terminals.get(tid)
    with s.lock:
        manager = cart_manager(db, s.cart)
        collector = s.tenders(manager)
        collector.remove_tender(index)
        return collector.as_dict()


@router.post("/checkout/abort")
def abort_checkout(tid: str, db: Session = Depends(get_db)):
    s = terminals.get(tid)
    with s.lock:
        s.abort_checkout()
        return s.cart_view(cart_manager(db, s.cart))


@router.post("/checkout")
def checkout(
    tid: str,
    db: Session = Depends(get_db),
    x_user: Optional[str] = Header(default="demo", alias="X-User", convert_underscores=False),
):
    s = terminals.get(tid)
    with s.lock:
        manager = cart_manager(db, s.cart)
        collector = s.tenders(manager)
        added = len(collector.entries)
        collector.prepare_checkout()
        try:
            result = SaleFinalizer(db, SqlCatalog(db, settings.stock_policy)).finalize(
                manager, collector, x_user, terminal_id=tid
            )
        except Exception:
            # el fiado agregado automáticamente no sobrevive a un intento fallido
            del collector.entries[added:]
            raise
        s.collector = None
        return {**result.as_dict(), "tenders": [e.as_dict() for e in collector.entries]}
