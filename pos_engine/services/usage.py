from datetime import datetime
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ..models.promotion import PromotionCustomerUsage, PromotionRule


def claim_usage(
    db: Session, promotion_id: int, customer_id: Optional[int] = None, now: Optional[datetime] = None
) -> bool:
    """
    Increment-with-cap atómico: suma +1 en promotion.current_usage solo si la
    regla sigue activa y vigente en ``now`` y no alcanzó usage_limit (UPDATE
    condicional, nunca leer-y-escribir), y lo mismo en el contador por cliente.
    Devuelve False si la regla ya no aplica o algún tope se alcanzó; en ese
    caso nada queda incrementado.
    commit/rollback lo hace el caller (finalizador de venta).
    """
    now = now or datetime.now()
    res = db.execute(
        update(PromotionRule)
        .where(PromotionRule.id == promotion_id)
        .where(PromotionRule.is_active.is_(True))
        .where(PromotionRule.start_date <= now, PromotionRule.end_date >= now)
        .where(
            or_(
                PromotionRule.usage_limit.is_(None),
                PromotionRule.current_usage < PromotionRule.usage_limit,
            )
        )
        .values(current_usage=PromotionRule.current_usage + 1)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False
    if customer_id is None:
        return True

    cap = db.query(PromotionRule.usage_per_customer).filter(PromotionRule.id == promotion_id).scalar()
    if _bump_customer(db, promotion_id, customer_id, cap):
        return True

    # tope por cliente alcanzado: deshacer el +1 global
    db.execute(
        update(PromotionRule)
        .where(PromotionRule.id == promotion_id)
        .values(current_usage=PromotionRule.current_usage - 1)
        .execution_options(synchronize_session=False)
    )
    return False


def _bump_customer(db: Session, promotion_id: int, customer_id: int, cap: Optional[int]) -> bool:
    _ensure_customer_row(db, promotion_id, customer_id)
    stmt = update(PromotionCustomerUsage).where(
        PromotionCustomerUsage.promotion_id == promotion_id,
        PromotionCustomerUsage.customer_id == customer_id,
    )
    if cap is not None:
        stmt = stmt.where(PromotionCustomerUsage.used < cap)
    res = db.execute(
        stmt.values(used=PromotionCustomerUsage.used + 1).execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def _ensure_customer_row(db: Session, promotion_id: int, customer_id: int) -> None:
    # INSERT OR IGNORE: otra terminal puede crear la misma fila al mismo tiempo
    values = {"promotion_id": promotion_id, "customer_id": customer_id, "used": 0}
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        stmt = sqlite_insert(PromotionCustomerUsage).values(**values).on_conflict_do_nothing()
    elif dialect == "postgresql":
        stmt = pg_insert(PromotionCustomerUsage).values(**values).on_conflict_do_nothing()
    else:
        if db.query(PromotionCustomerUsage.id).filter_by(promotion_id=promotion_id, customer_id=customer_id).first():
            return
        db.add(PromotionCustomerUsage(**values))
        db.flush()
        return
    db.execute(stmt)
