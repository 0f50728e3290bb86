"""Tender collection for one checkout attempt.

States::

    open -> partially_tendered -> fully_tendered -> settled
      \\__________________\\__________________\\____> aborted

``settled`` and ``aborted`` are terminal. Non-cash tenders can never take the
paid amount past the total; a cash tender may, and the excess becomes change.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional

from ..core.errors import NotFound, ValidationError
from ..core.money import ZERO, money

logger = logging.getLogger(__name__)


class TenderMethod(str, Enum):
    CASH = "cash"
    PIX = "pix"
    DEBIT_CARD = "debit_card"
    CREDIT_CARD = "credit_card"
    CREDIT_ACCOUNT = "credit_account"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"


class TenderState(str, Enum):
    OPEN = "open"
    PARTIALLY_TENDERED = "partially_tendered"
    FULLY_TENDERED = "fully_tendered"
    SETTLED = "settled"
    ABORTED = "aborted"


TERMINAL_STATES = (TenderState.SETTLED, TenderState.ABORTED)


@dataclass(frozen=True)
class TenderEntry:
    method: TenderMethod
    amount: Decimal
    installments: int = 1
    card_brand: Optional[str] = None
    card_last_digits: Optional[str] = None
    pix_key: Optional[str] = None
    authorization_code: Optional[str] = None

    def __post_init__(self):
        try:
            method = TenderMethod(self.method)
        except ValueError:
            raise ValidationError("INVALID_TENDER_METHOD", f"unknown tender method: {self.method}")
        try:
            amount = money(self.amount)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError("INVALID_AMOUNT", f"invalid amount: {self.amount!r}")
        if amount <= ZERO:
            raise ValidationError("INVALID_AMOUNT", "tender amount must be positive")
        if self.installments is None or int(self.installments) < 1:
            raise ValidationError("INVALID_INSTALLMENTS", "installments must be >= 1")
        if int(self.installments) > 1 and method is not TenderMethod.CREDIT_CARD:
            raise ValidationError("INVALID_INSTALLMENTS", "installments only apply to credit_card")
        digits = self.card_last_digits
        if digits is not None and (len(digits) != 4 or not digits.isdigit()):
            raise ValidationError("INVALID_CARD_DIGITS", "card_last_digits must be 4 digits")
        object.__setattr__(self, "method", method)
        object.__setattr__(self, "amount", amount)
        object.__setattr__(self, "installments", int(self.installments))

    @property
    def is_cash(self) -> bool:
        return self.method is TenderMethod.CASH

    def as_dict(self) -> dict:
        return {
            "method": self.method.value,
            "amount": str(self.amount),
            "installments": self.installments,
            "card_brand": self.card_brand,
            "card_last_digits": self.card_last_digits,
            "pix_key": self.pix_key,
            "authorization_code": self.authorization_code,
        }


class TenderCollector:
    def __init__(self, total: Decimal, has_customer: bool = False):
        self.total = money(total)
        self.has_customer = has_customer
        self.entries: List[TenderEntry] = []
        self._final: Optional[TenderState] = None

    # --- lectura ---

    @property
    def paid(self) -> Decimal:
        return money(sum((e.amount for e in self.entries), ZERO))

    @property
    def cash_paid(self) -> Decimal:
        return money(sum((e.amount for e in self.entries if e.is_cash), ZERO))

    @property
    def remaining(self) -> Decimal:
        return max(ZERO, self.total - self.paid)

    @property
    def change_due(self) -> Decimal:
        return max(ZERO, self.paid - self.total)

    @property
    def state(self) -> TenderState:
        if self._final is not None:
            return self._final
        if not self.entries and self.total > ZERO:
            return TenderState.OPEN
        if self.paid < self.total:
            return TenderState.PARTIALLY_TENDERED
        return TenderState.FULLY_TENDERED

    # --- mutadores ---

    def retotal(self, total: Decimal, has_customer: bool) -> None:
        """Refresh the target total; only allowed before any tender is recorded."""
        self._check_live()
        if self.entries:
            raise ValidationError("TENDERS_RECORDED", "remove tenders before changing the cart")
        self.total = money(total)
        self.has_customer = has_customer

    def add_tender(self, entry: TenderEntry) -> int:
        self._check_live()
        if entry.method is TenderMethod.CREDIT_ACCOUNT and not self.has_customer:
            raise ValidationError("CUSTOMER_REQUIRED", "credit_account needs a customer on the cart")
        if entry.is_cash:
            if self.remaining <= ZERO:
                raise ValidationError("ALREADY_TENDERED", "nothing left to pay")
        elif entry.amount > self.remaining:
            raise ValidationError(
                "OVERPAYMENT",
                f"{entry.method.value} {entry.amount} exceeds remaining balance {self.remaining}",
            )
        self.entries.append(entry)
        logger.debug("tender %s %s -> %s", entry.method.value, entry.amount, self.state.value)
        return len(self.entries) - 1

    def remove_tender(self, index: int) -> TenderEntry:
        self._check_live()
        if index < 0 or index >= len(self.entries):
            raise NotFound("TENDER_NOT_FOUND", f"no tender at index {index}")
        return self.entries.pop(index)

    def prepare_checkout(self) -> None:
        """Close the gap before finalizing: a shortfall can only go on the customer's account."""
        self._check_live()
        short = self.remaining
        if short > ZERO:
            if not self.has_customer:
                raise ValidationError("CHECKOUT_UNDERTENDERED", f"{short} still due")
            self.entries.append(TenderEntry(TenderMethod.CREDIT_ACCOUNT, short))
            logger.info("shortfall %s moved to credit_account", short)

    def settle(self) -> None:
        if self.state is not TenderState.FULLY_TENDERED:
            raise ValidationError("NOT_FULLY_TENDERED", f"cannot settle from {self.state.value}")
        self._final = TenderState.SETTLED

    def abort(self) -> None:
        self._check_live()
        self._final = TenderState.ABORTED

    def _check_live(self) -> None:
        if self._final is not None:
            raise ValidationError("TENDER_CLOSED", f"checkout already {self._final.value}")

    def as_dict(self) -> dict:
        return {
            "state": self.state.value,
            "total": str(self.total),
            "paid": str(self.paid),
            "remaining": str(self.remaining),
            "change_due": str(self.change_due),
            "tenders": [e.as_dict() for e in self.entries],
        }
