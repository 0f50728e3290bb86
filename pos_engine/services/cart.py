from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, FrozenSet, List, Mapping, Optional

from ..core.errors import NotFound, ValidationError
from ..core.money import ZERO, money
from .catalog import CatalogItem
from .coupons import CODE_NOT_FOUND, CouponValidator
from .promotions import AppliedDiscount, CartContext, PromotionResolver, PromotionTerms

logger = logging.getLogger(__name__)


@dataclass
class CartLine:
    item: CatalogItem
    quantity: int
    # precio unitario congelado al agregar; no cambia aunque cambie el catálogo
    unit_price: Decimal
    discounts: List[AppliedDiscount] = field(default_factory=list)

    @property
    def gross(self) -> Decimal:
        return money(self.unit_price * self.quantity)

    def discount_total(self, drop: FrozenSet[int] = frozenset()) -> Decimal:
        return money(sum((d.amount for d in self.discounts if d.promotion_id not in drop), ZERO))

    def total(self, drop: FrozenSet[int] = frozenset()) -> Decimal:
        return max(ZERO, self.gross - self.discount_total(drop))


@dataclass
class Cart:
    lines: Dict[int, CartLine] = field(default_factory=dict)  # por item id, en orden de alta
    customer_id: Optional[int] = None
    coupon: Optional[PromotionTerms] = None
    coupon_discount: Optional[AppliedDiscount] = None

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def clear(self) -> None:
        self.lines.clear()
        self.customer_id = None
        self.coupon = None
        self.coupon_discount = None


class FlatRateTax:
    """Flat rate over the post-discount subtotal."""

    def __init__(self, rate: Decimal):
        self.rate = Decimal(str(rate))

    def __call__(self, taxable: Decimal) -> Decimal:
        return money(max(ZERO, taxable) * self.rate)


@dataclass(frozen=True)
class CartTotals:
    subtotal: Decimal
    line_discount: Decimal
    coupon_discount: Decimal
    tax: Decimal
    total: Decimal

    @property
    def discount(self) -> Decimal:
        return self.line_discount + self.coupon_discount

    def as_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "discount": str(self.discount),
            "line_discount": str(self.line_discount),
            "coupon_discount": str(self.coupon_discount),
            "tax": str(self.tax),
            "total": str(self.total),
        }


def compute_totals(cart: Cart, tax_policy: FlatRateTax, drop: FrozenSet[int] = frozenset()) -> CartTotals:
    """Totals derived from the current lines; ``drop`` leaves out the given promotions."""
    subtotal = money(sum((l.gross for l in cart.lines.values()), ZERO))
    line_discount = money(sum((l.discount_total(drop) for l in cart.lines.values()), ZERO))
    coupon = ZERO
    if cart.coupon_discount is not None and cart.coupon_discount.promotion_id not in drop:
        coupon = min(cart.coupon_discount.amount, subtotal - line_discount)
    tax = tax_policy(subtotal - line_discount - coupon)
    total = money(subtotal - line_discount - coupon + tax)
    return CartTotals(subtotal, line_discount, coupon, tax, total)


class CartManager:
    def __init__(
        self,
        cart: Cart,
        resolver: PromotionResolver,
        tax_policy: FlatRateTax,
        usage: Optional[Mapping[int, int]] = None,
        coupon_validator: Optional[CouponValidator] = None,
    ):
        self.cart = cart
        self.resolver = resolver
        self.tax_policy = tax_policy
        self.usage = dict(usage or {})
        self.coupon_validator = coupon_validator

    def add_item(self, item: CatalogItem, qty: int = 1) -> CartLine:
        _check_quantity(qty)
        line = self.cart.lines.get(item.id)
        if line is None:
            line = CartLine(item=item, quantity=qty, unit_price=item.unit_price)
            self.cart.lines[item.id] = line
        else:
            line.quantity += qty
        self.reprice()
        return line

    def set_quantity(self, item_id: int, qty: int) -> Optional[CartLine]:
        line = self._line(item_id)
        if qty <= 0:
            self.remove_item(item_id)
            return None
        _check_quantity(qty)
        line.quantity = qty
        self.reprice()
        return line

    def remove_item(self, item_id: int) -> None:
        self._line(item_id)
        del self.cart.lines[item_id]
        self.reprice()

    def set_customer(self, customer_id: Optional[int], usage: Optional[Mapping[int, int]] = None) -> None:
        self.cart.customer_id = customer_id
        self.usage = dict(usage or {})
        self.reprice()

    def apply_coupon(self, code: str) -> PromotionTerms:
        if self.coupon_validator is None:
            raise ValidationError("COUPONS_DISABLED")
        res = self.coupon_validator.validate(code, self.cart.customer_id)
        if not res.valid:
            if res.reason == CODE_NOT_FOUND:
                raise NotFound("COUPON_NOT_FOUND", f"coupon not found: {res.code}")
            raise ValidationError(f"COUPON_{res.reason.upper()}", f"coupon {res.code} rejected: {res.reason}")
        self.cart.coupon = res.terms
        self.reprice()
        logger.info("coupon %s applied (promotion %s)", res.code, res.terms.id)
        return res.terms

    def remove_coupon(self) -> None:
        self.cart.coupon = None
        self.reprice()

    def reprice(self) -> None:
        ctx = self.context()
        for line in self.cart.lines.values():
            line.discounts = self.resolver.resolve(
                line.item, line.quantity, self.cart.customer_id, ctx, unit_price=line.unit_price
            )
        self.cart.coupon_discount = None
        if self.cart.coupon is not None:
            self.cart.coupon_discount = self.resolver.coupon_discount(
                self.cart.coupon, [(l.item, l.total()) for l in self.cart.lines.values()], ctx
            )

    def context(self) -> CartContext:
        lines = self.cart.lines.values()
        return CartContext(
            subtotal=money(sum((l.gross for l in lines), ZERO)),
            item_ids=frozenset(self.cart.lines),
            customer_usage=self.usage,
        )

    def totals(self) -> CartTotals:
        return compute_totals(self.cart, self.tax_policy)

    def clear(self) -> None:
        self.cart.clear()

    def _line(self, item_id: int) -> CartLine:
        line = self.cart.lines.get(item_id)
        if line is None:
            raise NotFound("LINE_NOT_FOUND", f"no cart line for item {item_id}")
        return line


def _check_quantity(qty) -> None:
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise ValidationError("INVALID_QUANTITY", f"quantity must be a positive integer: {qty!r}")


def cart_snapshot(cart: Cart, totals: CartTotals) -> dict:
    return {
        "customer_id": cart.customer_id,
        "coupon_code": cart.coupon.coupon_code if cart.coupon else None,
        "coupon_discount": cart.coupon_discount.as_dict() if cart.coupon_discount else None,
        "lines": [
            {
                "item_id": l.item.id,
                "sku": l.item.sku,
                "name": l.item.name,
                "quantity": l.quantity,
                "unit_price": str(l.unit_price),
                "discount": str(l.discount_total()),
                "line_total": str(l.total()),
                "promotions": [d.as_dict() for d in l.discounts],
            }
            for l in cart.lines.values()
        ],
        **totals.as_dict(),
    }
