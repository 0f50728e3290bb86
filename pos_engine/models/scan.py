from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from ..db import Base


class BarcodeScan(Base):
    __tablename__ = "barcode_scan"
    id = Column(Integer, primary_key=True)
    barcode = Column(String(50), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("product.id"), nullable=True)
    found = Column(Boolean, nullable=False, default=False)
    scan_type = Column(String(12), nullable=False, default="sale")  # sale | inventory | price_check
    terminal_id = Column(String(40), nullable=True)
    cashier_id = Column(String(60), nullable=True)
    scan_time = Column(DateTime, default=datetime.utcnow)
