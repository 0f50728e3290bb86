import threading
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from pos_engine.core.errors import DrawerNotOpen, TransientError, ValidationError
from pos_engine.db import Base, make_engine
from pos_engine.models.customer import CustomerCredit
from pos_engine.models.product import Product
from pos_engine.models.promotion import PromotionCustomerUsage, PromotionRule, PromotionScope, PromotionUsage
from pos_engine.models.sale import Sale
from pos_engine.services.cart import Cart, CartManager, FlatRateTax
from pos_engine.services.catalog import CatalogItem, SqlCatalog
from pos_engine.services.drawer import DrawerSessionManager
from pos_engine.services.finalizer import SaleFinalizer
from pos_engine.services.promotions import PromotionResolver, load_rules
from pos_engine.services.tenders import TenderCollector, TenderEntry, TenderState


def D(v):
    return Decimal(v)


@pytest.fixture
def drawer(db):
    return DrawerSessionManager(db).open("ana", "100.00")


@pytest.fixture
def tier_setup(db, make_product, make_rule):
    p = make_product(price="10.00", stock=20)
    rule = make_rule("quantity_tier", "10", min_quantity=5, product_ids=[p.id])
    return p, rule


def _priced(build_manager, product, qty=5, cart=None):
    m = build_manager(cart=cart)
    m.add_item(CatalogItem.from_product(product), qty)
    return m


def _pay(m, *tenders, has_customer=False):
    c = TenderCollector(m.totals().total, has_customer=has_customer)
    for method, amount in tenders:
        c.add_tender(TenderEntry(method, D(amount)))
    return c


def test_end_to_end_quantity_tier_cash_sale(db, drawer, tier_setup, build_manager):
    p, rule = tier_setup
    m = _priced(build_manager, p)
    line = m.cart.lines[p.id]
    assert line.discount_total() == D("5.00")
    assert line.total() == D("45.00")

    c = _pay(m, ("cash", "50.00"))
    assert c.state is TenderState.FULLY_TENDERED
    assert c.change_due == D("5.00")

    res = SaleFinalizer(db, SqlCatalog(db)).finalize(m, c, "ana", terminal_id="T1")
    sale = res.sale
    assert sale.total == D("45.00")
    assert sale.sale_no == f"POS-{sale.id:06d}"
    assert sale.status == "completed"
    assert res.change_due == D("5.00")
    assert not res.adjusted
    assert [(l.qty, l.discount, l.line_total) for l in sale.lines] == [(5, D("5.00"), D("45.00"))]
    assert [d.promotion_id for d in sale.lines[0].discounts] == [rule.id]

    assert DrawerSessionManager(db).totals(drawer.id)["cash"] == D("45.00")
    db.refresh(rule)
    db.refresh(p)
    assert rule.current_usage == 1
    assert p.stock_qty == 15
    usage = db.query(PromotionUsage).one()
    assert (usage.sale_id, usage.discount_amount, usage.quantity_used) == (sale.id, D("5.00"), 5)

    assert m.cart.is_empty
    assert c.state is TenderState.SETTLED


def test_concurrent_cap_drops_discount_on_second_sale(db, drawer, make_product, make_rule, build_manager):
    p = make_product(price="10.00", stock=20)
    rule = make_rule("quantity_tier", "10", min_quantity=5, usage_limit=1, product_ids=[p.id])

    # ambas terminales vieron la promo elegible antes de finalizar
    m1 = _priced(build_manager, p)
    m2 = _priced(build_manager, p)
    c1 = _pay(m1, ("cash", "50.00"))
    c2 = _pay(m2, ("cash", "50.00"))

    fin = SaleFinalizer(db, SqlCatalog(db))
    r1 = fin.finalize(m1, c1, "ana")
    r2 = fin.finalize(m2, c2, "ana")

    assert r1.sale.total == D("45.00") and not r1.adjusted
    assert r2.adjusted
    assert [e.promotion_id for e in r2.dropped] == [rule.id]
    assert r2.sale.total == D("50.00")
    assert r2.sale.discount_total == D("0.00")
    assert r2.change_due == D("0.00")
    assert r2.sale.lines[0].discounts == []

    db.refresh(rule)
    assert rule.current_usage == 1
    assert db.query(PromotionUsage).count() == 1
    assert DrawerSessionManager(db).totals(drawer.id)["cash"] == D("95.00")


def test_dropped_discount_leaves_balance_due_when_paid_exactly(db, drawer, make_product, make_rule, build_manager):
    p = make_product(price="10.00", stock=20)
    make_rule("quantity_tier", "10", min_quantity=5, usage_limit=1, current_usage=0, product_ids=[p.id])
    m1 = _priced(build_manager, p)
    m2 = _priced(build_manager, p)
    fin = SaleFinalizer(db, SqlCatalog(db))
    fin.finalize(m1, _pay(m1, ("pix", "45.00")), "ana")
    r2 = fin.finalize(m2, _pay(m2, ("pix", "45.00")), "ana")
    assert r2.sale.total == D("50.00")
    assert r2.balance_due == D("5.00")
    assert r2.sale.balance_due == D("5.00")
    assert db.query(CustomerCredit).count() == 0


def test_dropped_discount_with_customer_goes_to_house_account(
    db, drawer, make_product, make_rule, make_customer, build_manager
):
    cust = make_customer()
    p = make_product(price="10.00", stock=20)
    make_rule("quantity_tier", "10", min_quantity=5, usage_limit=1, product_ids=[p.id])
    m1 = _priced(build_manager, p, cart=Cart(customer_id=cust.id))
    m2 = _priced(build_manager, p, cart=Cart(customer_id=cust.id))
    fin = SaleFinalizer(db, SqlCatalog(db))
    fin.finalize(m1, _pay(m1, ("pix", "45.00"), has_customer=True), "ana")
    r2 = fin.finalize(m2, _pay(m2, ("pix", "45.00"), has_customer=True), "ana")

    assert r2.adjusted
    assert r2.sale.total == D("50.00")
    assert r2.balance_due == D("0.00")
    assert r2.sale.balance_due == D("0.00")
    assert r2.sale.paid_total == D("50.00")
    assert sorted((pay.method, pay.amount) for pay in r2.sale.payments) == [
        ("credit_account", D("5.00")),
        ("pix", D("45.00")),
    ]
    credit = db.query(CustomerCredit).one()
    assert (credit.customer_id, credit.sale_id, credit.amount) == (cust.id, r2.sale.id, D("5.00"))
    totals = DrawerSessionManager(db).totals(drawer.id)
    assert totals["credit_account"] == D("5.00")
    assert totals["pix"] == D("90.00")


def test_promotion_deactivated_after_pricing_is_not_committed(db, drawer, tier_setup, build_manager):
    p, rule = tier_setup
    m = _priced(build_manager, p)
    c = _pay(m, ("cash", "50.00"))
    assert c.total == D("45.00")

    rule.is_active = False
    db.commit()

    res = SaleFinalizer(db, SqlCatalog(db)).finalize(m, c, "ana")
    assert [e.promotion_id for e in res.dropped] == [rule.id]
    assert res.sale.total == D("50.00")
    assert res.sale.discount_total == D("0.00")
    assert res.change_due == D("0.00")
    db.refresh(rule)
    assert rule.current_usage == 0
    assert db.query(PromotionUsage).count() == 0


def test_promotion_window_closing_before_checkout_makes_tenders_stale(db, drawer, make_product, make_rule, build_manager):
    t = {"now": datetime.now()}
    p = make_product(price="10.00", stock=20)
    rule = make_rule("quantity_tier", "10", min_quantity=5, end_date=t["now"] + timedelta(hours=1), product_ids=[p.id])
    m = build_manager(clock=lambda: t["now"])
    m.add_item(CatalogItem.from_product(p), 5)
    c = _pay(m, ("cash", "45.00"))

    t["now"] += timedelta(hours=2)
    with pytest.raises(ValidationError) as exc:
        SaleFinalizer(db, SqlCatalog(db)).finalize(m, c, "ana")
    assert exc.value.code == "TENDER_TOTAL_STALE"
    assert m.totals().total == D("50.00")
    assert db.query(Sale).count() == 0
    db.refresh(rule)
    assert rule.current_usage == 0


def test_threaded_checkouts_never_exceed_usage_cap(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(bind=eng)
    Session = sessionmaker(bind=eng, autoflush=False, autocommit=False)

    now = datetime.now()
    with Session() as s:
        p = Product(sku="RACE-1", name="Race", barcode="7890000999001", price=D("10.00"), stock_qty=50)
        rule = PromotionRule(
            kind="quantity_tier",
            name="race",
            discount_value=D("10"),
            min_quantity=5,
            usage_limit=1,
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=1),
        )
        s.add_all([p, rule])
        s.flush()
        s.add(PromotionScope(promotion_id=rule.id, product_id=p.id))
        s.commit()
        rule_id = rule.id
        item = CatalogItem.from_product(p)
        for cashier in ("ana", "beto"):
            DrawerSessionManager(s).open(cashier, "0.00")

    barrier = threading.Barrier(2)
    results, transient = {}, []

    def sell(cashier):
        s = Session()
        try:
            m = CartManager(Cart(), PromotionResolver(load_rules(s)), FlatRateTax(D("0")))
            m.add_item(item, 5)
            c = _pay(m, ("cash", "50.00"))
            barrier.wait()
            results[cashier] = SaleFinalizer(s, SqlCatalog(s)).finalize(m, c, cashier)
        except TransientError as e:
            transient.append(e)
        finally:
            s.close()

    threads = [threading.Thread(target=sell, args=(name,)) for name in ("ana", "beto")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(results) + len(transient) == 2
    assert results
    discounted = [r for r in results.values() if not r.adjusted]
    assert len(discounted) == 1
    assert discounted[0].totals.total == D("45.00")
    for r in results.values():
        if r.adjusted:
            assert r.totals.total == D("50.00")

    with Session() as s:
        assert s.get(PromotionRule, rule_id).current_usage == 1
        assert s.query(PromotionUsage).count() == 1
    eng.dispose()


def test_failure_rolls_everything_back(db, drawer, make_product, make_rule, build_manager):
    p = make_product(price="10.00", stock=2)
    rule = make_rule("quantity_tier", "10", min_quantity=5, product_ids=[p.id])
    m = _priced(build_manager, p)
    c = _pay(m, ("cash", "45.00"))

    with pytest.raises(ValidationError) as exc:
        SaleFinalizer(db, SqlCatalog(db, "enforce")).finalize(m, c, "ana")
    assert exc.value.code == "INSUFFICIENT_STOCK"

    assert db.query(Sale).count() == 0
    db.refresh(rule)
    db.refresh(p)
    assert rule.current_usage == 0
    assert p.stock_qty == 2
    assert DrawerSessionManager(db).totals(drawer.id)["cash"] == D("0.00")
    assert m.cart.lines[p.id].quantity == 5
    assert c.state is TenderState.FULLY_TENDERED


def test_bypass_stock_policy_allows_negative_stock(db, drawer, make_product, build_manager):
    p = make_product(price="1.00", stock=1)
    m = _priced(build_manager, p, qty=3)
    SaleFinalizer(db, SqlCatalog(db, "bypass")).finalize(m, _pay(m, ("cash", "3.00")), "ana")
    db.refresh(p)
    assert p.stock_qty == -2


def test_database_busy_is_transient_and_retryable(db, drawer, tier_setup, build_manager, monkeypatch):
    p, rule = tier_setup
    m = _priced(build_manager, p)
    c = _pay(m, ("cash", "50.00"))

    def locked(*a, **kw):
        raise OperationalError("UPDATE drawer_total", {}, Exception("database is locked"))

    monkeypatch.setattr(DrawerSessionManager, "credit", locked)
    with pytest.raises(TransientError) as exc:
        SaleFinalizer(db, SqlCatalog(db)).finalize(m, c, "ana")
    assert exc.value.retryable
    assert db.query(Sale).count() == 0
    db.refresh(rule)
    assert rule.current_usage == 0

    monkeypatch.undo()
    res = SaleFinalizer(db, SqlCatalog(db)).finalize(m, c, "ana")
    assert res.sale.total == D("45.00")


def test_finalize_without_open_drawer(db, tier_setup, build_manager):
    p, _ = tier_setup
    m = _priced(build_manager, p)
    c = _pay(m, ("cash", "50.00"))
    with pytest.raises(DrawerNotOpen):
        SaleFinalizer(db, SqlCatalog(db)).finalize(m, c, "nadie")
    assert not m.cart.is_empty
    assert db.query(Sale).count() == 0


def test_finalize_requires_full_tender(db, drawer, tier_setup, build_manager):
    p, _ = tier_setup
    m = _priced(build_manager, p)
    c = _pay(m, ("pix", "20.00"))
    with pytest.raises(ValidationError) as exc:
        SaleFinalizer(db, SqlCatalog(db)).finalize(m, c, "ana")
    assert exc.value.code == "NOT_FULLY_TENDERED"


def test_stale_tender_total_is_rejected(db, drawer, tier_setup, build_manager):
    p, _ = tier_setup
    m = _priced(build_manager, p)
    c = _pay(m, ("cash", "50.00"))
    m.add_item(CatalogItem.from_product(p), 1)
    with pytest.raises(ValidationError) as exc:
        SaleFinalizer(db, SqlCatalog(db)).finalize(m, c, "ana")
    assert exc.value.code == "TENDER_TOTAL_STALE"


def test_credit_account_shortfall_creates_receivable(db, drawer, make_product, make_customer, build_manager):
    cust = make_customer()
    p = make_product(price="20.00")
    m = _priced(build_manager, p, qty=4, cart=Cart(customer_id=cust.id))
    c = _pay(m, ("pix", "30.00"), has_customer=True)
    c.prepare_checkout()

    res = SaleFinalizer(db, SqlCatalog(db)).finalize(m, c, "ana")
    credit = db.query(CustomerCredit).one()
    assert (credit.customer_id, credit.sale_id, credit.amount) == (cust.id, res.sale.id, D("50.00"))
    assert sorted(pay.method for pay in res.sale.payments) == ["credit_account", "pix"]
    totals = DrawerSessionManager(db).totals(drawer.id)
    assert totals["pix"] == D("30.00")
    assert totals["credit_account"] == D("50.00")


def test_coupon_redemption_counts_per_customer(db, drawer, make_product, make_rule, make_customer, build_manager):
    cust = make_customer()
    p = make_product(price="10.00")
    coupon = make_rule("coupon", "10", coupon_code="ONCE", usage_per_customer=1)
    m = _priced(build_manager, p, qty=2, cart=Cart(customer_id=cust.id))
    m.apply_coupon("ONCE")
    assert m.totals().total == D("18.00")

    res = SaleFinalizer(db, SqlCatalog(db)).finalize(m, _pay(m, ("cash", "18.00")), "ana")
    assert res.sale.coupon_code == "ONCE"
    assert res.sale.discount_total == D("2.00")
    row = db.query(PromotionCustomerUsage).filter_by(promotion_id=coupon.id, customer_id=cust.id).one()
    assert row.used == 1
    usage = db.query(PromotionUsage).one()
    assert usage.coupon_code == "ONCE"

    # el mismo cliente ya no puede usarlo
    m2 = build_manager(cart=Cart(customer_id=cust.id))
    with pytest.raises(ValidationError):
        m2.apply_coupon("ONCE")
