from datetime import datetime, timedelta

from pos_engine.models.promotion import PromotionCustomerUsage, PromotionRule
from pos_engine.services.coupons import (
    CODE_NOT_FOUND,
    CODE_REQUIRED,
    CUSTOMER_LIMIT_REACHED,
    NOT_IN_FORCE,
    USAGE_LIMIT_REACHED,
    CouponValidator,
)
from pos_engine.services.usage import claim_usage


def test_valid_coupon_is_case_insensitive(db, make_rule):
    rule = make_rule("coupon", "10", coupon_code="WELCOME10")
    res = CouponValidator(db).validate(" welcome10 ")
    assert res.valid
    assert res.code == "WELCOME10"
    assert res.terms.id == rule.id


def test_rejection_reasons(db, make_rule, make_customer):
    now = datetime.now()
    make_rule("coupon", "10", coupon_code="OLD", start_date=now - timedelta(days=10), end_date=now - timedelta(days=5))
    make_rule("coupon", "10", coupon_code="SPENT", usage_limit=2, current_usage=2)
    limited = make_rule("coupon", "10", coupon_code="ONCE", usage_per_customer=1)
    cust = make_customer()
    db.add(PromotionCustomerUsage(promotion_id=limited.id, customer_id=cust.id, used=1))
    db.commit()

    v = CouponValidator(db)
    assert v.validate("").reason == CODE_REQUIRED
    assert v.validate("NOPE").reason == CODE_NOT_FOUND
    assert v.validate("OLD").reason == NOT_IN_FORCE
    assert v.validate("SPENT").reason == USAGE_LIMIT_REACHED
    assert v.validate("ONCE", customer_id=cust.id).reason == CUSTOMER_LIMIT_REACHED
    assert v.validate("ONCE").valid


def test_claim_usage_respects_global_cap(db, make_rule):
    rule = make_rule("percentage", "10", usage_limit=1)
    assert claim_usage(db, rule.id) is True
    assert claim_usage(db, rule.id) is False
    db.commit()
    db.refresh(rule)
    assert rule.current_usage == 1


def test_claim_usage_per_customer_undoes_global_increment(db, make_rule, make_customer):
    rule = make_rule("percentage", "10", usage_per_customer=1)
    cust = make_customer()
    assert claim_usage(db, rule.id, cust.id) is True
    assert claim_usage(db, rule.id, cust.id) is False
    db.commit()
    db.refresh(rule)
    assert rule.current_usage == 1
    row = db.query(PromotionCustomerUsage).filter_by(promotion_id=rule.id, customer_id=cust.id).one()
    assert row.used == 1


def test_coupon_validate_endpoint(client, db, make_rule):
    make_rule("coupon", "15", coupon_code="SAVE15")
    r = client.post("/pos/coupon/validate", json={"code": "save15"})
    assert r.status_code == 200
    body = r.json()
    assert body["valid"] is True
    assert body["discount_type"] == "coupon"
    assert body["discount_value"] == "15.00"

    r = client.post("/pos/coupon/validate", json={"code": "NOPE"})
    assert r.json() == {
        "valid": False,
        "code": "NOPE",
        "reason": CODE_NOT_FOUND,
        "promotion_id": None,
        "discount_type": None,
        "discount_value": None,
    }
    assert db.query(PromotionRule).count() == 1
