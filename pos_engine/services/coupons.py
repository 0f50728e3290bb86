from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from ..models.promotion import PromotionRule
from .promotions import PromotionTerms, customer_usage

logger = logging.getLogger(__name__)

# razones de rechazo (estables, se exponen por API)
CODE_REQUIRED = "code_required"
CODE_NOT_FOUND = "code_not_found"
NOT_IN_FORCE = "not_in_force"
USAGE_LIMIT_REACHED = "usage_limit_reached"
CUSTOMER_LIMIT_REACHED = "customer_limit_reached"


@dataclass(frozen=True)
class CouponResult:
    code: str
    terms: Optional[PromotionTerms] = None
    reason: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.terms is not None and self.reason is None


class CouponValidator:
    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.now):
        self.db = db
        self.clock = clock

    def validate(self, code: str, customer_id: Optional[int] = None) -> CouponResult:
        code_up = (code or "").strip().upper()
        if not code_up:
            return CouponResult(code_up, reason=CODE_REQUIRED)

        rule = (
            self.db.query(PromotionRule)
            .options(selectinload(PromotionRule.scopes))
            .filter(func.upper(PromotionRule.coupon_code) == code_up)
            .first()
        )
        if rule is None:
            logger.info("coupon %s rejected: %s", code_up, CODE_NOT_FOUND)
            return CouponResult(code_up, reason=CODE_NOT_FOUND)

        terms = PromotionTerms.from_model(rule)
        reason = None
        if not terms.in_force(self.clock()):
            reason = NOT_IN_FORCE
        elif terms.global_cap_reached():
            reason = USAGE_LIMIT_REACHED
        elif customer_id is not None and terms.customer_cap_reached(
            customer_usage(self.db, customer_id).get(terms.id, 0)
        ):
            reason = CUSTOMER_LIMIT_REACHED

        if reason:
            logger.info("coupon %s rejected: %s", code_up, reason)
            return CouponResult(code_up, terms=terms, reason=reason)
        return CouponResult(code_up, terms=terms)
