from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.errors import DrawerNotOpen, InvariantViolation, ValidationError
from ..core.money import ZERO, money
from ..models.drawer import DrawerSession, DrawerTotal
from ..models.sale import Sale
from .tenders import TenderMethod

logger = logging.getLogger(__name__)


class _KeyedLocks:
    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock


_cashier_locks = _KeyedLocks()


@contextmanager
def cashier_lock(cashier_id: str):
    # un solo escritor por cajero (abrir/cerrar caja y finalizar ventas)
    lock = _cashier_locks.get(cashier_id)
    with lock:
        yield


class DrawerSessionManager:
    def __init__(self, db: Session):
        self.db = db

    def current(self, cashier_id: str) -> Optional[DrawerSession]:
        rows = (
            self.db.query(DrawerSession)
            .filter(DrawerSession.cashier_id == cashier_id, DrawerSession.status == "open")
            .order_by(DrawerSession.id)
            .all()
        )
        if len(rows) > 1:
            logger.error("cashier %s has %d open drawer sessions", cashier_id, len(rows))
            raise InvariantViolation("MULTIPLE_OPEN_DRAWERS", f"cashier {cashier_id} has {len(rows)} open drawers")
        return rows[0] if rows else None

    def require_open(self, cashier_id: str) -> DrawerSession:
        s = self.current(cashier_id)
        if s is None:
            raise DrawerNotOpen(message=f"cashier {cashier_id} has no open drawer")
        return s

    def open(self, cashier_id: str, opening_float) -> DrawerSession:
        opening = money(opening_float)
        if opening < ZERO:
            raise ValidationError("INVALID_AMOUNT", "opening float cannot be negative")
        with cashier_lock(cashier_id):
            if self.current(cashier_id) is not None:
                raise ValidationError("DRAWER_ALREADY_OPEN", f"cashier {cashier_id} already has an open drawer")
            s = DrawerSession(cashier_id=cashier_id, status="open", opening_float=opening)
            self.db.add(s)
            try:
                self.db.flush()
                for m in TenderMethod:
                    self.db.add(DrawerTotal(session_id=s.id, method=m.value, amount=ZERO))
                self.db.commit()
            except IntegrityError as e:
                # otra instancia abrió primero (índice único parcial)
                self.db.rollback()
                raise ValidationError("DRAWER_ALREADY_OPEN", f"cashier {cashier_id} already has an open drawer") from e
            self.db.refresh(s)
        logger.info("drawer %s opened by %s with float %s", s.id, cashier_id, opening)
        return s

    def credit(self, session_id: int, method: TenderMethod, amount: Decimal) -> None:
        """Add ``amount`` to the method bucket. Runs in the caller's transaction."""
        res = self.db.execute(
            update(DrawerTotal)
            .where(DrawerTotal.session_id == session_id, DrawerTotal.method == TenderMethod(method).value)
            .values(amount=DrawerTotal.amount + money(amount))
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise InvariantViolation("DRAWER_TOTAL_MISSING", f"no {method} bucket on drawer {session_id}")

    def totals(self, session_id: int) -> Dict[str, Decimal]:
        rows = self.db.query(DrawerTotal.method, DrawerTotal.amount).filter(DrawerTotal.session_id == session_id).all()
        out = {m.value: ZERO for m in TenderMethod}
        out.update({method: money(amount or 0) for method, amount in rows})
        return out

    def close(self, cashier_id: str, declared_closing_count, notes: Optional[str] = None) -> DrawerSession:
        declared = money(declared_closing_count)
        if declared < ZERO:
            raise ValidationError("INVALID_AMOUNT", "declared count cannot be negative")
        with cashier_lock(cashier_id):
            s = self.require_open(cashier_id)
            cash = self.totals(s.id)[TenderMethod.CASH.value]
            expected = money(s.opening_float) + cash
            s.declared_closing_count = declared
            s.expected_cash = expected
            s.variance = declared - expected
            s.notes = notes
            s.status = "closed"
            s.closed_at = datetime.utcnow()
            self.db.commit()
            self.db.refresh(s)
        logger.info("drawer %s closed by %s: expected %s declared %s variance %s",
                    s.id, cashier_id, expected, declared, s.variance)
        return s

    def summary(self, s: DrawerSession) -> dict:
        totals = self.totals(s.id)
        sales = self.db.query(func.count(Sale.id)).filter(Sale.drawer_session_id == s.id).scalar() or 0
        expected = money(s.opening_float) + totals[TenderMethod.CASH.value]
        return {
            "id": s.id,
            "cashier_id": s.cashier_id,
            "status": s.status,
            "opening_float": str(money(s.opening_float)),
            "totals": {k: str(v) for k, v in totals.items()},
            "sale_count": int(sales),
            "expected_cash": str(expected),
            "declared_closing_count": str(money(s.declared_closing_count)) if s.declared_closing_count is not None else None,
            "variance": str(money(s.variance)) if s.variance is not None else None,
            "notes": s.notes,
            "opened_at": s.opened_at.isoformat() if s.opened_at else None,
            "closed_at": s.closed_at.isoformat() if s.closed_at else None,
        }
