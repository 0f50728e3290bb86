from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..core.schemas import CouponCheck
from ..db import get_db
from ..services.coupons import CouponValidator

router = APIRouter(prefix="/pos/coupon", tags=["pos", "coupon"])


@router.post("/validate")
def validate(payload: CouponCheck, db: Session = Depends(get_db)):
    res = CouponValidator(db).validate(payload.code, payload.customer_id)
    terms = res.terms
    return {
        "valid": res.valid,
        "code": res.code,
        "reason": res.reason,
        "promotion_id": terms.id if terms else None,
        "discount_type": terms.kind.value if terms else None,
        "discount_value": str(terms.discount_value) if terms else None,
    }
