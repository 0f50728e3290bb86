from decimal import Decimal

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from pos_engine.core.errors import DrawerNotOpen, InvariantViolation, ValidationError
from pos_engine.models.drawer import DrawerSession
from pos_engine.services.drawer import DrawerSessionManager
from pos_engine.services.tenders import TenderMethod


def test_open_creates_one_bucket_per_method(db):
    drawers = DrawerSessionManager(db)
    s = drawers.open("ana", "100.00")
    assert s.status == "open"
    totals = drawers.totals(s.id)
    assert set(totals) == {m.value for m in TenderMethod}
    assert all(v == Decimal("0.00") for v in totals.values())


def test_second_open_for_same_cashier_is_rejected(db):
    drawers = DrawerSessionManager(db)
    drawers.open("ana", 0)
    with pytest.raises(ValidationError) as exc:
        drawers.open("ana", 0)
    assert exc.value.code == "DRAWER_ALREADY_OPEN"
    # otro cajero sí puede abrir
    assert drawers.open("beto", 0).cashier_id == "beto"


def test_variance_shortage(db):
    drawers = DrawerSessionManager(db)
    s = drawers.open("ana", Decimal("100.00"))
    drawers.credit(s.id, TenderMethod.CASH, Decimal("250.00"))
    drawers.credit(s.id, TenderMethod.PIX, Decimal("30.00"))
    db.commit()
    closed = drawers.close("ana", Decimal("340.00"), notes="faltante")
    assert closed.status == "closed"
    assert closed.expected_cash == Decimal("350.00")
    assert closed.variance == Decimal("-10.00")
    assert closed.closed_at is not None


def test_close_without_open_session(db):
    with pytest.raises(DrawerNotOpen) as exc:
        DrawerSessionManager(db).close("ana", 0)
    assert exc.value.code == "DRAWER_NOT_OPEN"


def test_closed_session_is_not_reopened(db):
    drawers = DrawerSessionManager(db)
    first = drawers.open("ana", 10)
    drawers.close("ana", 10)
    second = drawers.open("ana", 20)
    assert second.id != first.id
    db.refresh(first)
    assert first.status == "closed"


def test_storage_rejects_two_open_sessions(db):
    db.add(DrawerSession(cashier_id="ana", status="open", opening_float=0))
    db.add(DrawerSession(cashier_id="ana", status="open", opening_float=0))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_two_open_sessions_are_an_invariant_violation(db):
    # datos heredados de antes del índice parcial
    db.execute(text("DROP INDEX uq_drawer_open_cashier"))
    db.add_all([
        DrawerSession(cashier_id="ana", status="open", opening_float=0),
        DrawerSession(cashier_id="ana", status="open", opening_float=0),
    ])
    db.commit()
    with pytest.raises(InvariantViolation):
        DrawerSessionManager(db).current("ana")


def test_summary(db):
    drawers = DrawerSessionManager(db)
    s = drawers.open("ana", "50.00")
    drawers.credit(s.id, "cash", Decimal("20.00"))
    db.commit()
    summary = drawers.summary(s)
    assert summary["expected_cash"] == "70.00"
    assert summary["totals"]["cash"] == "20.00"
    assert summary["sale_count"] == 0
