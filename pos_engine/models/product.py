from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from ..db import Base


class Product(Base):
    __tablename__ = "product"
    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(60), unique=True, index=True, nullable=False)
    name = Column(String(120), nullable=False)
    # barcode principal opcional; no es único en el histórico (ver ProductBarcode)
    barcode = Column(String(50), index=True, nullable=True)
    category = Column(String(80), index=True, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    cost = Column(Numeric(12, 2), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    stock_qty = Column(Integer, default=0, nullable=False)

    barcodes = relationship(
        "ProductBarcode", back_populates="product", cascade="all, delete-orphan"
    )


class ProductBarcode(Base):
    __tablename__ = "product_barcode"
    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("product.id"), nullable=False)
    code = Column(String(50), unique=True, index=True, nullable=False)

    product = relationship("Product", back_populates="barcodes")
