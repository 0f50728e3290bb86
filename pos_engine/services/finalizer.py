"""Sale Finalizer: the single commit point of a checkout.

Everything happens in one database transaction: sale snapshot, stock
decrements, promotion usage claims, drawer credits and house-account
receivables. Any failure rolls the transaction back and leaves the cart and
its tenders untouched so the cashier can retry.

A promotion whose usage cap was consumed by another terminal after pricing is
dropped here; the sale still goes through with the recomputed total, and the
result lists the dropped promotions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.exc import OperationalError

from ..core.errors import CapExceeded, PosError, TransientError, ValidationError
from ..core.money import ZERO, money
from ..models.customer import CustomerCredit
from ..models.promotion import PromotionUsage
from ..models.sale import Sale, SaleLine, SaleLineDiscount, SalePayment
from .cart import CartManager, CartTotals, compute_totals
from .catalog import SqlCatalog
from .drawer import DrawerSessionManager, cashier_lock
from .tenders import TenderCollector, TenderMethod, TenderState
from .usage import claim_usage

logger = logging.getLogger(__name__)


@dataclass
class FinalizeResult:
    sale: Sale
    totals: CartTotals
    change_due: Decimal
    balance_due: Decimal
    dropped: List[CapExceeded] = field(default_factory=list)

    @property
    def adjusted(self) -> bool:
        return bool(self.dropped)

    def as_dict(self) -> dict:
        return {
            "sale_id": self.sale.id,
            "sale_no": self.sale.sale_no,
            "status": self.sale.status,
            **self.totals.as_dict(),
            "change_due": str(self.change_due),
            "balance_due": str(self.balance_due),
            "adjusted": self.adjusted,
            "dropped_promotions": [
                {"promotion_id": e.promotion_id, "detail": e.code, "message": e.message} for e in self.dropped
            ],
        }


class SaleFinalizer:
    def __init__(self, db, catalog: SqlCatalog, drawers: Optional[DrawerSessionManager] = None):
        self.db = db
        self.catalog = catalog
        self.drawers = drawers or DrawerSessionManager(db)

    def finalize(
        self,
        manager: CartManager,
        collector: TenderCollector,
        cashier_id: str,
        terminal_id: Optional[str] = None,
    ) -> FinalizeResult:
        cart = manager.cart
        if cart.is_empty:
            raise ValidationError("CART_EMPTY", "nothing to sell")
        if collector.state is not TenderState.FULLY_TENDERED:
            raise ValidationError("NOT_FULLY_TENDERED", f"tender state is {collector.state.value}")
        # reglas fuera de vigencia desde que se agregó el item dejan de aplicar aquí
        manager.reprice()
        if collector.total != manager.totals().total:
            raise ValidationError("TENDER_TOTAL_STALE", "cart total changed after tendering")

        with cashier_lock(cashier_id):
            try:
                result = self._commit(manager, collector, cashier_id, terminal_id)
                self.db.commit()
            except OperationalError as e:
                self.db.rollback()
                logger.warning("finalize failed for %s, rolled back: %s", cashier_id, e)
                raise TransientError("FINALIZE_UNAVAILABLE", "database busy, retry checkout") from e
            except PosError:
                self.db.rollback()
                raise
            except Exception:
                self.db.rollback()
                logger.exception("unexpected finalize failure for %s", cashier_id)
                raise

        self.db.refresh(result.sale)
        collector.settle()
        manager.clear()
        logger.info("sale %s finalized: total %s change %s", result.sale.sale_no, result.totals.total, result.change_due)
        return result

    def _commit(self, manager: CartManager, collector: TenderCollector, cashier_id: str, terminal_id):
        cart = manager.cart
        drawer = self.drawers.require_open(cashier_id)

        # 1) reclamar usos: cada promo aplicada suma +1 una vez por venta
        applied = _applied_promotions(manager)
        now = manager.resolver.clock()
        dropped: List[CapExceeded] = []
        for pid in applied:
            if not claim_usage(self.db, pid, cart.customer_id, now):
                logger.warning("promotion %s capped or no longer in force at commit; discount dropped", pid)
                dropped.append(CapExceeded(pid))
        drop = frozenset(e.promotion_id for e in dropped)

        totals = compute_totals(cart, manager.tax_policy, drop)
        paid = collector.paid
        change = max(ZERO, paid - totals.total)
        balance = max(ZERO, totals.total - paid)
        # con cliente, lo que falta tras un descuento caído va a su cuenta (fiado)
        house = ZERO
        if balance > ZERO and cart.customer_id is not None:
            house, balance = balance, ZERO
            paid += house

        # 2) snapshot inmutable
        sale = Sale(
            cashier_id=cashier_id,
            terminal_id=terminal_id,
            drawer_session_id=drawer.id,
            customer_id=cart.customer_id,
            coupon_code=cart.coupon.coupon_code if cart.coupon else None,
            subtotal=totals.subtotal,
            discount_total=totals.discount,
            tax_total=totals.tax,
            total=totals.total,
            paid_total=paid,
            change_due=change,
            balance_due=balance,
            status="completed",
        )
        self.db.add(sale)
        self.db.flush()
        sale.sale_no = f"POS-{sale.id:06d}"

        usage: Dict[int, List] = {}
        for pos, line in enumerate(cart.lines.values(), start=1):
            sl = SaleLine(
                sale_id=sale.id,
                position=pos,
                product_id=line.item.id,
                sku=line.item.sku,
                name=line.item.name,
                qty=line.quantity,
                unit_price=line.unit_price,
                discount=line.discount_total(drop),
                line_total=line.total(drop),
            )
            self.db.add(sl)
            self.db.flush()
            for d in line.discounts:
                if d.promotion_id in drop:
                    continue
                self.db.add(SaleLineDiscount(sale_line_id=sl.id, promotion_id=d.promotion_id, amount=d.amount))
                acc = usage.setdefault(d.promotion_id, [ZERO, 0, None])
                acc[0] += d.amount
                acc[1] += line.quantity

            # 3) stock
            self.catalog.decrement_stock(line.item.id, line.quantity)

        if totals.coupon_discount > ZERO and cart.coupon_discount is not None:
            acc = usage.setdefault(cart.coupon_discount.promotion_id, [ZERO, 0, None])
            acc[0] += totals.coupon_discount
            acc[1] += 1
            acc[2] = cart.coupon_discount.coupon_code

        for pid, (amount, qty, code) in usage.items():
            self.db.add(
                PromotionUsage(
                    promotion_id=pid,
                    sale_id=sale.id,
                    customer_id=cart.customer_id,
                    discount_amount=money(amount),
                    quantity_used=qty,
                    coupon_code=code,
                )
            )

        # 4) pagos, caja y fiado
        buckets: Dict[TenderMethod, Decimal] = {}
        for e in collector.entries:
            self.db.add(
                SalePayment(
                    sale_id=sale.id,
                    method=e.method.value,
                    amount=e.amount,
                    installments=e.installments,
                    card_brand=e.card_brand,
                    card_last_digits=e.card_last_digits,
                    pix_key=e.pix_key,
                    authorization_code=e.authorization_code,
                )
            )
            buckets[e.method] = buckets.get(e.method, ZERO) + e.amount
            if e.method is TenderMethod.CREDIT_ACCOUNT:
                self.db.add(CustomerCredit(customer_id=cart.customer_id, sale_id=sale.id, amount=e.amount))

        if house > ZERO:
            self.db.add(SalePayment(sale_id=sale.id, method=TenderMethod.CREDIT_ACCOUNT.value, amount=house))
            self.db.add(CustomerCredit(customer_id=cart.customer_id, sale_id=sale.id, amount=house))
            buckets[TenderMethod.CREDIT_ACCOUNT] = buckets.get(TenderMethod.CREDIT_ACCOUNT, ZERO) + house
            logger.info("shortfall %s charged to customer %s account", house, cart.customer_id)

        # en caja queda el efectivo recibido menos el vuelto
        if TenderMethod.CASH in buckets:
            buckets[TenderMethod.CASH] -= change
        for method, amount in buckets.items():
            if amount > ZERO:
                self.drawers.credit(drawer.id, method, amount)

        self.db.flush()
        return FinalizeResult(sale=sale, totals=totals, change_due=change, balance_due=balance, dropped=dropped)


def _applied_promotions(manager: CartManager) -> List[int]:
    seen: List[int] = []
    for line in manager.cart.lines.values():
        for d in line.discounts:
            if d.promotion_id not in seen:
                seen.append(d.promotion_id)
    cd = manager.cart.coupon_discount
    if cd is not None and cd.promotion_id not in seen:
        seen.append(cd.promotion_id)
    return seen
