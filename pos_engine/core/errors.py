"""Error taxonomy shared by services and routers.

Services raise these; ``pos_engine.main`` renders them as JSON with
``{"detail": code, "message": ..., "retryable": ...}``.
"""
from typing import Optional


class PosError(Exception):
    status_code = 400
    default_code = "POS_ERROR"
    retryable = False

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None):
        self.code = code or self.default_code
        self.message = message or self.code
        super().__init__(self.message)

    def as_dict(self) -> dict:
        return {"detail": self.code, "message": self.message, "retryable": self.retryable}


class NotFound(PosError):
    status_code = 404
    default_code = "NOT_FOUND"


class ValidationError(PosError):
    status_code = 422
    default_code = "VALIDATION_ERROR"


class DrawerNotOpen(ValidationError):
    default_code = "DRAWER_NOT_OPEN"


class CapExceeded(PosError):
    """A usage-capped promotion ran out between pricing and commit."""

    status_code = 409
    default_code = "PROMOTION_CAP_EXCEEDED"

    def __init__(self, promotion_id: int, code: Optional[str] = None, message: Optional[str] = None):
        self.promotion_id = promotion_id
        super().__init__(code, message or f"promotion {promotion_id} no longer available")


class TransientError(PosError):
    status_code = 503
    default_code = "TRANSIENT_ERROR"
    retryable = True


class InvariantViolation(PosError):
    status_code = 500
    default_code = "INVARIANT_VIOLATION"
