from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import NotFound
from ..core.schemas import KeysIn, ManualScanIn
from ..db import get_db
from ..services.catalog import SqlCatalog
from ..services.scanner import KeyEvent, keys_from_text
from ..services.terminal import cart_manager, terminals

router = APIRouter(tags=["scan"])


@router.get("/scan/{code}")
def scan_lookup(code: str, db: Session = Depends(get_db)):
    return SqlCatalog(db).lookup(code).as_dict()


@router.get("/terminals/{tid}")
def terminal_state(tid: str):
    return terminals.get(tid).as_dict()


@router.post("/terminals/{tid}/scan/start")
def scan_start(tid: str):
    s = terminals.get(tid)
    with s.lock:
        s.decoder.start()
        return s.as_dict()


@router.post("/terminals/{tid}/scan/stop")
def scan_stop(tid: str):
    s = terminals.get(tid)
    with s.lock:
        s.decoder.stop()
        return s.as_dict()


@router.post("/terminals/{tid}/scan/keys")
def scan_keys(
    tid: str,
    payload: KeysIn,
    db: Session = Depends(get_db),
    x_user: Optional[str] = Header(default="demo", alias="X-User", convert_underscores=False),
):
    s = terminals.get(tid)
    with s.lock:
        # rechazar antes de tocar el buffer: ninguna tecla se consume
        s.ensure_cart_mutable()
        events = [KeyEvent(k.key, k.ts) for k in payload.keys]
        if payload.text:
            events.extend(keys_from_text(payload.text, start=_next_ts(events)))

        tokens = list(s.decoder.decode(events))

        catalog = SqlCatalog(db, settings.stock_policy)
        manager = cart_manager(db, s.cart)
        added, not_found = [], []
        for token in tokens:
            try:
                item = s.scan(db, catalog, token, x_user)
            except NotFound:
                # no fatal: se informa y se sigue con el resto
                not_found.append(token)
                continue
            manager.add_item(item, payload.qty)
            added.append(item.as_dict())

        return {
            "tokens": tokens,
            "added": added,
            "not_found": not_found,
            "pending": s.decoder.pending,
            "cart": s.cart_view(manager),
        }


@router.post("/terminals/{tid}/scan/manual")
def scan_manual(
    tid: str,
    payload: ManualScanIn,
    db: Session = Depends(get_db),
    x_user: Optional[str] = Header(default="demo", alias="X-User", convert_underscores=False),
):
    s = terminals.get(tid)
    with s.lock:
        if payload.scan_type == "sale":
            s.ensure_cart_mutable()
        catalog = SqlCatalog(db, settings.stock_policy)
        item = s.scan(db, catalog, payload.code, x_user, payload.scan_type)
        if payload.scan_type != "sale":
            return {"item": item.as_dict(), "scan_type": payload.scan_type}
        manager = cart_manager(db, s.cart)
        manager.add_item(item, payload.qty)
        return {"item": item.as_dict(), "scan_type": payload.scan_type, "cart": s.cart_view(manager)}


def _next_ts(events) -> Optional[float]:
    stamps = [e.ts for e in events if e.ts is not None]
    if stamps:
        return max(stamps) + 0.01
    return None
