"""Per-terminal state kept between API calls.

Each terminal owns its scan decoder, its in-progress cart and the tender
collector of the current checkout attempt. Nothing here is persisted; a
restart starts every terminal with an empty cart.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Deque, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import NotFound, ValidationError
from ..models.scan import BarcodeScan
from .cart import Cart, CartManager, FlatRateTax, cart_snapshot
from .catalog import CatalogItem, SqlCatalog
from .coupons import CouponValidator
from .promotions import PromotionResolver, customer_usage, load_rules
from .scanner import ScanDecoder
from .tenders import TERMINAL_STATES, TenderCollector

logger = logging.getLogger(__name__)

SCAN_TYPES = ("sale", "inventory", "price_check")


@dataclass(frozen=True)
class ScanRecord:
    code: str
    found: bool
    product_id: Optional[int]
    scan_type: str
    at: datetime

    def as_dict(self) -> dict:
        return {
            "code": self.code,
            "found": self.found,
            "product_id": self.product_id,
            "scan_type": self.scan_type,
            "at": self.at.isoformat(),
        }


class TerminalSession:
    def __init__(self, terminal_id: str, decoder: ScanDecoder, history_size: int = 10):
        self.terminal_id = terminal_id
        self.decoder = decoder
        self.cart = Cart()
        self.collector: Optional[TenderCollector] = None
        self.history: Deque[ScanRecord] = deque(maxlen=history_size)
        self.lock = threading.RLock()

    @property
    def has_tenders(self) -> bool:
        return self.collector is not None and bool(self.collector.entries)

    def ensure_cart_mutable(self) -> None:
        if self.has_tenders:
            raise ValidationError("TENDERS_RECORDED", "remove tenders or abort checkout before changing the cart")

    def tenders(self, manager: CartManager) -> TenderCollector:
        """Collector for the current attempt, bound to the cart total as it is now."""
        total = manager.totals().total
        has_customer = self.cart.customer_id is not None
        if self.collector is None or self.collector.state in TERMINAL_STATES:
            self.collector = TenderCollector(total, has_customer)
        elif not self.collector.entries:
            self.collector.retotal(total, has_customer)
        return self.collector

    def abort_checkout(self) -> None:
        if self.collector is not None and self.collector.state not in TERMINAL_STATES:
            self.collector.abort()
        self.collector = None

    def clear(self) -> None:
        self.abort_checkout()
        self.cart.clear()

    def scan(
        self,
        db: Session,
        catalog: SqlCatalog,
        code: str,
        cashier_id: Optional[str] = None,
        scan_type: str = "sale",
    ) -> CatalogItem:
        """One catalog lookup per token; every attempt is logged."""
        if scan_type not in SCAN_TYPES:
            raise ValidationError("INVALID_SCAN_TYPE", f"scan_type must be one of {SCAN_TYPES}")
        try:
            item = catalog.lookup(code)
        except NotFound:
            self._record(db, code, None, scan_type, cashier_id)
            raise
        self._record(db, code, item, scan_type, cashier_id)
        return item

    def _record(self, db, code, item, scan_type, cashier_id) -> None:
        rec = ScanRecord(
            code=code,
            found=item is not None,
            product_id=item.id if item else None,
            scan_type=scan_type,
            at=datetime.utcnow(),
        )
        self.history.append(rec)
        db.add(
            BarcodeScan(
                barcode=code,
                product_id=rec.product_id,
                found=rec.found,
                scan_type=scan_type,
                terminal_id=self.terminal_id,
                cashier_id=cashier_id,
                scan_time=rec.at,
            )
        )
        db.commit()

    def cart_view(self, manager: CartManager) -> dict:
        return {
            "terminal_id": self.terminal_id,
            **cart_snapshot(self.cart, manager.totals()),
            "checkout": self.collector.as_dict() if self.collector else None,
        }

    def as_dict(self) -> dict:
        return {
            "terminal_id": self.terminal_id,
            "scanning": self.decoder.active,
            "pending": self.decoder.pending,
            "history": [r.as_dict() for r in self.history],
            "checkout": self.collector.as_dict() if self.collector else None,
        }


class TerminalRegistry:
    def __init__(self, decoder_factory: Optional[Callable[[], ScanDecoder]] = None, history_size: Optional[int] = None):
        self._decoder_factory = decoder_factory or _default_decoder
        self._history_size = history_size or settings.scan_history_size
        self._sessions: Dict[str, TerminalSession] = {}
        self._guard = threading.Lock()

    def get(self, terminal_id: str) -> TerminalSession:
        with self._guard:
            s = self._sessions.get(terminal_id)
            if s is None:
                s = TerminalSession(terminal_id, self._decoder_factory(), self._history_size)
                self._sessions[terminal_id] = s
            return s

    def reset(self) -> None:
        with self._guard:
            self._sessions.clear()


def _default_decoder() -> ScanDecoder:
    return ScanDecoder(
        min_length=settings.scan_min_length,
        max_length=settings.scan_max_length,
        idle_seconds=settings.scan_idle_seconds,
    )


terminals = TerminalRegistry()


def cart_manager(db: Session, cart: Cart, tax_rate=None) -> CartManager:
    """CartManager wired to the current promotion rules and the cart's customer."""
    rules = load_rules(db)
    if cart.coupon is not None:
        # términos frescos del cupón (contadores de uso actualizados)
        fresh = {r.id: r for r in rules}
        cart.coupon = fresh.get(cart.coupon.id)
        if cart.coupon is None:
            cart.coupon_discount = None
    manager = CartManager(
        cart,
        PromotionResolver(rules),
        FlatRateTax(settings.tax_rate if tax_rate is None else tax_rate),
        usage=customer_usage(db, cart.customer_id),
        coupon_validator=CouponValidator(db),
    )
    # los descuentos guardados en las líneas pueden ser de reglas ya vencidas o desactivadas
    manager.reprice()
    return manager
