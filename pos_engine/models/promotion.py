from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..db import Base


class PromotionRule(Base):
    __tablename__ = "promotion"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    description = Column(String(255), nullable=True)
    # percentage | fixed_amount | buy_x_get_y | quantity_tier | category_discount
    # | combo | coupon | cashback
    kind = Column(String(20), nullable=False)
    value_type = Column(String(12), nullable=False, default="percentage")  # percentage | fixed
    discount_value = Column(Numeric(12, 2), nullable=False, default=0)
    min_quantity = Column(Integer, nullable=False, default=1)
    max_quantity = Column(Integer, nullable=True)
    min_purchase_amount = Column(Numeric(12, 2), nullable=False, default=0)
    max_discount_amount = Column(Numeric(12, 2), nullable=True)
    buy_quantity = Column(Integer, nullable=True)
    get_quantity = Column(Integer, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    usage_limit = Column(Integer, nullable=True)
    usage_per_customer = Column(Integer, nullable=True)
    current_usage = Column(Integer, nullable=False, default=0)
    priority = Column(Integer, nullable=False, default=0)
    stackable = Column(Boolean, nullable=False, default=False)
    coupon_code = Column(String(40), unique=True, index=True, nullable=True)
    applicable_days = Column(JSON, nullable=True)  # [0..6], 0 = domingo
    applicable_hours = Column(JSON, nullable=True)  # [{"start": "HH:MM", "end": "HH:MM"}]
    created_at = Column(DateTime, default=datetime.utcnow)

    scopes = relationship(
        "PromotionScope", back_populates="promotion", cascade="all, delete-orphan"
    )


class PromotionScope(Base):
    __tablename__ = "promotion_scope"
    id = Column(Integer, primary_key=True)
    promotion_id = Column(Integer, ForeignKey("promotion.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("product.id"), nullable=True)
    category = Column(String(80), nullable=True)

    promotion = relationship("PromotionRule", back_populates="scopes")


class PromotionCustomerUsage(Base):
    __tablename__ = "promotion_customer_usage"
    id = Column(Integer, primary_key=True)
    promotion_id = Column(Integer, ForeignKey("promotion.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("customer.id"), nullable=False)
    used = Column(Integer, nullable=False, default=0)
    __table_args__ = (UniqueConstraint("promotion_id", "customer_id", name="uq_promo_customer"),)


class PromotionUsage(Base):
    __tablename__ = "promotion_usage"
    id = Column(Integer, primary_key=True)
    promotion_id = Column(Integer, ForeignKey("promotion.id"), nullable=False, index=True)
    sale_id = Column(Integer, ForeignKey("sale.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("customer.id"), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    quantity_used = Column(Integer, nullable=False, default=0)
    coupon_code = Column(String(40), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
