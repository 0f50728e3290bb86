import logging
from typing import Optional

from sqlalchemy.orm import Session, selectinload

from ..core.errors import NotFound, ValidationError
from ..core.money import money
from ..models.sale import Sale, SaleLine, SaleReversal

logger = logging.getLogger(__name__)

# kind de reversión -> estado final de la venta
REVERSAL_STATUS = {"refund": "refunded", "cancel": "cancelled"}


def get_sale(db: Session, sale_id: int) -> Sale:
    sale = (
        db.query(Sale)
        .options(
            selectinload(Sale.lines).selectinload(SaleLine.discounts),
            selectinload(Sale.payments),
            selectinload(Sale.reversals),
        )
        .filter(Sale.id == sale_id)
        .first()
    )
    if sale is None:
        raise NotFound("SALE_NOT_FOUND", f"sale not found: {sale_id}")
    return sale


def reverse_sale(db: Session, sale_id: int, kind: str, reason: Optional[str], cashier_id: str) -> SaleReversal:
    """Move a completed sale to refunded/cancelled and link a reversing record.

    The sale row itself keeps its snapshot; only ``status`` changes.
    """
    status = REVERSAL_STATUS.get(kind)
    if status is None:
        raise ValidationError("INVALID_REVERSAL_KIND", f"kind must be one of {sorted(REVERSAL_STATUS)}")
    sale = get_sale(db, sale_id)
    if sale.status != "completed":
        raise ValidationError("SALE_NOT_COMPLETED", f"sale {sale.sale_no} is {sale.status}")

    rev = SaleReversal(sale_id=sale.id, kind=kind, amount=money(sale.total), reason=reason, by_user=cashier_id)
    sale.status = status
    db.add(rev)
    db.commit()
    db.refresh(rev)
    logger.info("sale %s %s by %s", sale.sale_no, status, cashier_id)
    return rev


def _s(v):
    return str(money(v)) if v is not None else None


def sale_snapshot(sale: Sale) -> dict:
    return {
        "id": sale.id,
        "sale_no": sale.sale_no,
        "status": sale.status,
        "cashier_id": sale.cashier_id,
        "terminal_id": sale.terminal_id,
        "drawer_session_id": sale.drawer_session_id,
        "customer_id": sale.customer_id,
        "coupon_code": sale.coupon_code,
        "subtotal": _s(sale.subtotal),
        "discount_total": _s(sale.discount_total),
        "tax_total": _s(sale.tax_total),
        "total": _s(sale.total),
        "paid_total": _s(sale.paid_total),
        "change_due": _s(sale.change_due),
        "balance_due": _s(sale.balance_due),
        "created_at": sale.created_at.isoformat() if sale.created_at else None,
        "lines": [
            {
                "position": l.position,
                "product_id": l.product_id,
                "sku": l.sku,
                "name": l.name,
                "qty": l.qty,
                "unit_price": _s(l.unit_price),
                "discount": _s(l.discount),
                "line_total": _s(l.line_total),
                "promotions": [{"promotion_id": d.promotion_id, "amount": _s(d.amount)} for d in l.discounts],
            }
            for l in sale.lines
        ],
        "payments": [
            {
                "method": p.method,
                "amount": _s(p.amount),
                "installments": p.installments,
                "card_brand": p.card_brand,
                "card_last_digits": p.card_last_digits,
                "authorization_code": p.authorization_code,
            }
            for p in sale.payments
        ],
        "reversals": [
            {"kind": r.kind, "amount": _s(r.amount), "reason": r.reason, "by_user": r.by_user}
            for r in sale.reversals
        ],
    }
