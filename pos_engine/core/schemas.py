from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class KeyIn(BaseModel):
    key: str
    ts: Optional[float] = None


class KeysIn(BaseModel):
    keys: List[KeyIn] = Field(default_factory=list)
    # atajo: texto completo tipeado por el lector (agrega Enter al final)
    text: Optional[str] = None
    qty: int = 1


class ManualScanIn(BaseModel):
    code: str
    qty: int = 1
    scan_type: Literal["sale", "inventory", "price_check"] = "sale"

    @field_validator("code")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("code required")
        return v


class CartItemIn(BaseModel):
    code: Optional[str] = None
    item_id: Optional[int] = None
    qty: int = 1


class QuantityIn(BaseModel):
    qty: int


class CustomerIn(BaseModel):
    customer_id: Optional[int] = None


class CouponIn(BaseModel):
    code: str


class CouponCheck(BaseModel):
    code: str
    customer_id: Optional[int] = None


class TenderIn(BaseModel):
    method: Literal["cash", "pix", "debit_card", "credit_card", "credit_account", "bank_transfer", "check"]
    amount: Decimal
    installments: int = 1
    card_brand: Optional[str] = None
    card_last_digits: Optional[str] = None
    pix_key: Optional[str] = None
    authorization_code: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("amount must be > 0")
        return v


class DrawerOpenIn(BaseModel):
    opening_float: Decimal = Decimal("0")


class DrawerCloseIn(BaseModel):
    declared_closing_count: Decimal
    notes: Optional[str] = None


class ReverseIn(BaseModel):
    kind: Literal["refund", "cancel"]
    reason: Optional[str] = None
