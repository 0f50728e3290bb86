from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from ..core.schemas import ReverseIn
from ..db import get_db
from ..services.sales import get_sale, reverse_sale, sale_snapshot

router = APIRouter(prefix="/sales", tags=["sales"])


@router.get("/{sale_id}")
def read_sale(sale_id: int, db: Session = Depends(get_db)):
    return sale_snapshot(get_sale(db, sale_id))


@router.post("/{sale_id}/reverse")
def reverse(
    sale_id: int,
    payload: ReverseIn,
    db: Session = Depends(get_db),
    x_user: Optional[str] = Header(default="demo", alias="X-User", convert_underscores=False),
):
    reverse_sale(db, sale_id, payload.kind, payload.reason, x_user)
    return sale_snapshot(get_sale(db, sale_id))
