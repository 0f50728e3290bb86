"""Promotion rule evaluation.

Rules are loaded from the database into immutable ``PromotionTerms`` and
evaluated in memory. Every ``PromotionKind`` has exactly one evaluator in
``_EVALUATORS``; adding a kind without an evaluator fails at import time.

Selection policy for a line (``select_applicable``):

* candidates are ordered by priority (desc), then discount amount (desc);
* a non-stackable winner is applied alone;
* a stackable winner is followed by every other stackable candidate, in the
  same order, each capped at what is left of the line total, until the line
  reaches zero. Non-stackable candidates are never combined.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, selectinload

from ..core.errors import TransientError
from ..core.money import ZERO, money
from ..models.promotion import PromotionCustomerUsage, PromotionRule
from .catalog import CatalogItem

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class PromotionKind(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    BUY_X_GET_Y = "buy_x_get_y"
    QUANTITY_TIER = "quantity_tier"
    CATEGORY_DISCOUNT = "category_discount"
    COMBO = "combo"
    COUPON = "coupon"
    CASHBACK = "cashback"


class ValueType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


@dataclass(frozen=True)
class PromotionTerms:
    id: int
    name: str
    kind: PromotionKind
    discount_value: Decimal
    start_date: datetime
    end_date: datetime
    value_type: ValueType = ValueType.PERCENTAGE
    min_quantity: int = 1
    max_quantity: Optional[int] = None
    min_purchase_amount: Decimal = ZERO
    max_discount_amount: Optional[Decimal] = None
    buy_quantity: Optional[int] = None
    get_quantity: Optional[int] = None
    is_active: bool = True
    usage_limit: Optional[int] = None
    usage_per_customer: Optional[int] = None
    current_usage: int = 0
    priority: int = 0
    stackable: bool = False
    coupon_code: Optional[str] = None
    applicable_days: Tuple[int, ...] = ()
    applicable_hours: Tuple[Tuple[time, time], ...] = ()
    product_ids: FrozenSet[int] = frozenset()
    categories: FrozenSet[str] = frozenset()

    @classmethod
    def from_model(cls, rule: PromotionRule) -> "PromotionTerms":
        return cls(
            id=rule.id,
            name=rule.name,
            kind=PromotionKind(rule.kind),
            value_type=ValueType(rule.value_type or "percentage"),
            discount_value=Decimal(str(rule.discount_value or 0)),
            min_quantity=int(rule.min_quantity or 1),
            max_quantity=rule.max_quantity,
            min_purchase_amount=money(rule.min_purchase_amount or 0),
            max_discount_amount=(
                money(rule.max_discount_amount) if rule.max_discount_amount is not None else None
            ),
            buy_quantity=rule.buy_quantity,
            get_quantity=rule.get_quantity,
            start_date=rule.start_date,
            end_date=rule.end_date,
            is_active=bool(rule.is_active),
            usage_limit=rule.usage_limit,
            usage_per_customer=rule.usage_per_customer,
            current_usage=int(rule.current_usage or 0),
            priority=int(rule.priority or 0),
            stackable=bool(rule.stackable),
            coupon_code=(rule.coupon_code or "").strip().upper() or None,
            applicable_days=tuple(sorted({int(d) for d in (rule.applicable_days or []) if 0 <= int(d) <= 6})),
            applicable_hours=parse_hours(rule.applicable_hours),
            product_ids=frozenset(s.product_id for s in rule.scopes if s.product_id is not None),
            categories=frozenset(s.category for s in rule.scopes if s.category),
        )

    @property
    def coupon_gated(self) -> bool:
        return self.kind is PromotionKind.COUPON or self.coupon_code is not None

    def in_force(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if now < self.start_date or now > self.end_date:
            return False
        if self.applicable_days and weekday_index(now) not in self.applicable_days:
            return False
        if self.applicable_hours and not any(_in_range(now.time(), s, e) for s, e in self.applicable_hours):
            return False
        return True

    def covers(self, item: CatalogItem, cart_item_ids: FrozenSet[int] = frozenset()) -> bool:
        if self.kind is PromotionKind.COMBO:
            # combo: el item debe ser parte del conjunto y el conjunto completo debe estar en el carrito
            return bool(self.product_ids) and item.id in self.product_ids and self.product_ids <= cart_item_ids
        if not self.product_ids and not self.categories:
            return True
        return item.id in self.product_ids or (item.category is not None and item.category in self.categories)

    def global_cap_reached(self) -> bool:
        return self.usage_limit is not None and self.current_usage >= self.usage_limit

    def customer_cap_reached(self, used: int) -> bool:
        return self.usage_per_customer is not None and used >= self.usage_per_customer


@dataclass(frozen=True)
class AppliedDiscount:
    promotion_id: int
    name: str
    kind: PromotionKind
    amount: Decimal
    priority: int = 0
    stackable: bool = False
    coupon_code: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "promotion_id": self.promotion_id,
            "name": self.name,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "coupon_code": self.coupon_code,
        }


@dataclass(frozen=True)
class CartContext:
    """What the resolver may know about the rest of the cart."""

    subtotal: Decimal = ZERO
    item_ids: FrozenSet[int] = frozenset()
    customer_usage: Mapping[int, int] = field(default_factory=dict)


# --- helpers de vigencia ---


def weekday_index(dt: datetime) -> int:
    # 0 = domingo ... 6 = sábado
    return (dt.weekday() + 1) % 7


def _in_range(t: time, start: time, end: time) -> bool:
    if start <= end:
        return start <= t <= end
    # franja que cruza medianoche
    return t >= start or t <= end


def _parse_hhmm(s: str) -> time:
    hh, mm = str(s).strip().split(":")[:2]
    return time(int(hh), int(mm))


def parse_hours(raw) -> Tuple[Tuple[time, time], ...]:
    if not raw:
        return ()
    if isinstance(raw, dict):
        raw = [raw]
    out = []
    for r in raw:
        start, end = r.get("start"), r.get("end")
        if not start or not end:
            continue
        s, e = _parse_hhmm(start), _parse_hhmm(end)
        # fin inclusivo hasta el último segundo del minuto
        out.append((s, e.replace(second=59)))
    return tuple(out)


# --- evaluadores por tipo ---


def _line_total(unit_price: Decimal, quantity: int) -> Decimal:
    return money(unit_price * quantity)


def _by_value_type(terms: PromotionTerms, base: Decimal) -> Decimal:
    if terms.value_type is ValueType.FIXED:
        return money(terms.discount_value)
    return money(base * terms.discount_value / HUNDRED)


def _eval_percentage(terms: PromotionTerms, unit_price: Decimal, quantity: int) -> Decimal:
    return money(unit_price * quantity * terms.discount_value / HUNDRED)


def _eval_fixed_amount(terms: PromotionTerms, unit_price: Decimal, quantity: int) -> Decimal:
    return money(terms.discount_value)


def _eval_buy_x_get_y(terms: PromotionTerms, unit_price: Decimal, quantity: int) -> Decimal:
    if not terms.buy_quantity or not terms.get_quantity:
        return ZERO
    free_units = (quantity // terms.buy_quantity) * terms.get_quantity
    return money(free_units * unit_price)


def _eval_scoped(terms: PromotionTerms, unit_price: Decimal, quantity: int) -> Decimal:
    return _by_value_type(terms, _line_total(unit_price, quantity))


Evaluator = Callable[[PromotionTerms, Decimal, int], Decimal]

_EVALUATORS: Dict[PromotionKind, Evaluator] = {
    PromotionKind.PERCENTAGE: _eval_percentage,
    PromotionKind.FIXED_AMOUNT: _eval_fixed_amount,
    PromotionKind.BUY_X_GET_Y: _eval_buy_x_get_y,
    PromotionKind.QUANTITY_TIER: _eval_scoped,
    PromotionKind.CATEGORY_DISCOUNT: _eval_scoped,
    PromotionKind.COMBO: _eval_scoped,
    PromotionKind.COUPON: _eval_scoped,
    PromotionKind.CASHBACK: _eval_scoped,
}

_missing = set(PromotionKind) - set(_EVALUATORS)
if _missing:
    raise RuntimeError(f"promotion kinds without evaluator: {sorted(k.value for k in _missing)}")


def discount_for(terms: PromotionTerms, unit_price: Decimal, quantity: int) -> Decimal:
    amount = _EVALUATORS[terms.kind](terms, unit_price, quantity)
    if terms.max_discount_amount is not None:
        amount = min(amount, terms.max_discount_amount)
    return max(ZERO, min(amount, _line_total(unit_price, quantity)))


def select_applicable(
    candidates: Sequence[Tuple[PromotionTerms, Decimal]], line_total: Decimal
) -> List[AppliedDiscount]:
    ranked = sorted(
        (c for c in candidates if c[1] > ZERO),
        key=lambda c: (-c[0].priority, -c[1], c[0].id),
    )
    if not ranked:
        return []

    top, top_amount = ranked[0]
    if not top.stackable:
        return [_applied(top, min(top_amount, line_total))]

    applied: List[AppliedDiscount] = []
    remaining = line_total
    for terms, amount in ranked:
        if remaining <= ZERO:
            break
        if not terms.stackable:
            continue
        take = min(amount, remaining)
        applied.append(_applied(terms, take))
        remaining -= take
    return applied


def _applied(terms: PromotionTerms, amount: Decimal) -> AppliedDiscount:
    return AppliedDiscount(
        promotion_id=terms.id,
        name=terms.name,
        kind=terms.kind,
        amount=money(amount),
        priority=terms.priority,
        stackable=terms.stackable,
        coupon_code=terms.coupon_code,
    )


class PromotionResolver:
    def __init__(self, rules: Iterable[PromotionTerms], clock: Callable[[], datetime] = datetime.now):
        self.rules = list(rules)
        self.clock = clock

    def candidates(
        self,
        item: CatalogItem,
        quantity: int,
        unit_price: Decimal,
        customer_id: Optional[int],
        context: CartContext,
        now: datetime,
    ) -> List[Tuple[PromotionTerms, Decimal]]:
        out = []
        for terms in self.rules:
            if terms.coupon_gated:
                continue
            if not terms.in_force(now) or not terms.covers(item, context.item_ids):
                continue
            if quantity < terms.min_quantity:
                continue
            if terms.max_quantity is not None and quantity > terms.max_quantity:
                continue
            if context.subtotal < terms.min_purchase_amount:
                continue
            if terms.global_cap_reached():
                continue
            if customer_id is not None and terms.customer_cap_reached(context.customer_usage.get(terms.id, 0)):
                continue
            out.append((terms, discount_for(terms, unit_price, quantity)))
        return out

    def resolve(
        self,
        item: CatalogItem,
        quantity: int,
        customer_id: Optional[int] = None,
        context: Optional[CartContext] = None,
        unit_price: Optional[Decimal] = None,
    ) -> List[AppliedDiscount]:
        if quantity <= 0:
            return []
        context = context or CartContext(subtotal=_line_total(item.unit_price, quantity))
        price = unit_price if unit_price is not None else item.unit_price
        now = self.clock()
        found = self.candidates(item, quantity, price, customer_id, context, now)
        return select_applicable(found, _line_total(price, quantity))

    def coupon_discount(
        self,
        terms: PromotionTerms,
        lines: Iterable[Tuple[CatalogItem, Decimal]],
        context: CartContext,
    ) -> Optional[AppliedDiscount]:
        """Cart-level discount of a validated coupon over the net totals of the lines it covers."""
        if not terms.in_force(self.clock()):
            return None
        if context.subtotal < terms.min_purchase_amount:
            return None
        base = sum((net for item, net in lines if terms.covers(item, context.item_ids)), ZERO)
        if base <= ZERO:
            return None
        if terms.kind is PromotionKind.PERCENTAGE:
            amount = money(base * terms.discount_value / HUNDRED)
        elif terms.kind is PromotionKind.FIXED_AMOUNT:
            amount = money(terms.discount_value)
        else:
            amount = _by_value_type(terms, base)
        if terms.max_discount_amount is not None:
            amount = min(amount, terms.max_discount_amount)
        amount = min(amount, base)
        if amount <= ZERO:
            return None
        return _applied(terms, amount)


# --- carga desde la base ---


def load_rules(db: Session) -> List[PromotionTerms]:
    try:
        rows = (
            db.query(PromotionRule)
            .options(selectinload(PromotionRule.scopes))
            .filter(PromotionRule.is_active.is_(True))
            .order_by(PromotionRule.priority.desc(), PromotionRule.id)
            .all()
        )
    except OperationalError as e:
        logger.warning("could not load promotions: %s", e)
        raise TransientError("PROMOTIONS_UNAVAILABLE") from e
    return [PromotionTerms.from_model(r) for r in rows]


def customer_usage(db: Session, customer_id: Optional[int]) -> Dict[int, int]:
    if customer_id is None:
        return {}
    rows = (
        db.query(PromotionCustomerUsage.promotion_id, PromotionCustomerUsage.used)
        .filter(PromotionCustomerUsage.customer_id == customer_id)
        .all()
    )
    return {pid: int(used or 0) for pid, used in rows}
