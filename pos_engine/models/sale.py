from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from ..db import Base


class Sale(Base):
    __tablename__ = "sale"
    id = Column(Integer, primary_key=True)
    sale_no = Column(String(20), unique=True, index=True)
    cashier_id = Column(String(60), nullable=False, index=True)
    terminal_id = Column(String(40), nullable=True)
    drawer_session_id = Column(Integer, ForeignKey("drawer_session.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("customer.id"), nullable=True)
    coupon_code = Column(String(40), nullable=True)
    subtotal = Column(Numeric(12, 2), default=0)
    discount_total = Column(Numeric(12, 2), default=0)
    tax_total = Column(Numeric(12, 2), default=0)
    total = Column(Numeric(12, 2), default=0)
    paid_total = Column(Numeric(12, 2), default=0)
    change_due = Column(Numeric(12, 2), default=0)
    balance_due = Column(Numeric(12, 2), default=0)
    status = Column(String(12), default="completed")  # completed | refunded | cancelled
    created_at = Column(DateTime, default=datetime.utcnow)

    lines = relationship("SaleLine", back_populates="sale", order_by="SaleLine.position")
    payments = relationship("SalePayment", back_populates="sale", order_by="SalePayment.id")
    reversals = relationship("SaleReversal", back_populates="sale")


class SaleLine(Base):
    __tablename__ = "sale_line"
    id = Column(Integer, primary_key=True)
    sale_id = Column(Integer, ForeignKey("sale.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    product_id = Column(Integer, ForeignKey("product.id"), nullable=False)
    sku = Column(String(60))
    name = Column(String(120))
    qty = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    discount = Column(Numeric(12, 2), default=0)
    line_total = Column(Numeric(12, 2), default=0)

    sale = relationship("Sale", back_populates="lines")
    discounts = relationship("SaleLineDiscount", order_by="SaleLineDiscount.id")


class SaleLineDiscount(Base):
    __tablename__ = "sale_line_discount"
    id = Column(Integer, primary_key=True)
    sale_line_id = Column(Integer, ForeignKey("sale_line.id"), nullable=False, index=True)
    promotion_id = Column(Integer, ForeignKey("promotion.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)


class SalePayment(Base):
    __tablename__ = "sale_payment"
    id = Column(Integer, primary_key=True)
    sale_id = Column(Integer, ForeignKey("sale.id"), nullable=False, index=True)
    method = Column(String(20), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    installments = Column(Integer, default=1)
    card_brand = Column(String(30))
    card_last_digits = Column(String(4))
    pix_key = Column(String(120))
    authorization_code = Column(String(60))
    captured_at = Column(DateTime, default=datetime.utcnow)

    sale = relationship("Sale", back_populates="payments")


class SaleReversal(Base):
    __tablename__ = "sale_reversal"
    id = Column(Integer, primary_key=True)
    sale_id = Column(Integer, ForeignKey("sale.id"), nullable=False, index=True)
    kind = Column(String(12), nullable=False)  # refund | cancel
    amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(String(255))
    by_user = Column(String(60))
    created_at = Column(DateTime, default=datetime.utcnow)

    sale = relationship("Sale", back_populates="reversals")
