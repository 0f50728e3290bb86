from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from ..core.errors import NotFound
from ..core.schemas import DrawerCloseIn, DrawerOpenIn
from ..db import get_db
from ..services.drawer import DrawerSessionManager

router = APIRouter(prefix="/drawer", tags=["drawer"])


@router.post("/open")
def open_drawer(
    payload: DrawerOpenIn,
    db: Session = Depends(get_db),
    x_user: Optional[str] = Header(default="demo", alias="X-User", convert_underscores=False),
):
    drawers = DrawerSessionManager(db)
    s = drawers.open(x_user, payload.opening_float)
    return drawers.summary(s)


@router.post("/close")
def close_drawer(
    payload: DrawerCloseIn,
    db: Session = Depends(get_db),
    x_user: Optional[str] = Header(default="demo", alias="X-User", convert_underscores=False),
):
    drawers = DrawerSessionManager(db)
    s = drawers.close(x_user, payload.declared_closing_count, payload.notes)
    return drawers.summary(s)


@router.get("/current")
def current_drawer(
    db: Session = Depends(get_db),
    x_user: Optional[str] = Header(default="demo", alias="X-User", convert_underscores=False),
):
    drawers = DrawerSessionManager(db)
    s = drawers.current(x_user)
    if s is None:
        raise NotFound("DRAWER_NOT_FOUND", f"cashier {x_user} has no open drawer")
    return drawers.summary(s)
