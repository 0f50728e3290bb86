from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)

from ..db import Base


class DrawerSession(Base):
    __tablename__ = "drawer_session"
    id = Column(Integer, primary_key=True, index=True)
    cashier_id = Column(String(60), nullable=False)
    status = Column(String(10), nullable=False, default="open")  # open | closed
    opening_float = Column(Numeric(12, 2), nullable=False, default=0)
    declared_closing_count = Column(Numeric(12, 2), nullable=True)
    expected_cash = Column(Numeric(12, 2), nullable=True)
    variance = Column(Numeric(12, 2), nullable=True)
    notes = Column(String(255), nullable=True)
    opened_at = Column(DateTime, default=datetime.utcnow)
    closed_at = Column(DateTime, nullable=True)

    # una sola sesión abierta por cajero
    __table_args__ = (
        Index(
            "uq_drawer_open_cashier",
            "cashier_id",
            unique=True,
            sqlite_where=text("status = 'open'"),
            postgresql_where=text("status = 'open'"),
        ),
    )


class DrawerTotal(Base):
    __tablename__ = "drawer_total"
    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey("drawer_session.id"), nullable=False)
    method = Column(String(20), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    __table_args__ = (UniqueConstraint("session_id", "method", name="uq_drawer_total"),)
