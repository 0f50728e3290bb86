from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String

from ..db import Base


class Customer(Base):
    __tablename__ = "customer"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=True)
    email = Column(String(120), nullable=True)
    phone = Column(String(40), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class CustomerCredit(Base):
    """House-account receivable created by a credit_account tender."""

    __tablename__ = "customer_credit"
    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey("customer.id"), nullable=False, index=True)
    sale_id = Column(Integer, ForeignKey("sale.id"), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    kind = Column(String(10), nullable=False, default="credit")  # credit | payment
    status = Column(String(10), nullable=False, default="pending")  # pending | paid | cancelled
    created_at = Column(DateTime, default=datetime.utcnow)
