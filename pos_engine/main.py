import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.errors import PosError
from .core.logging import configure_logging
from .db import Base, engine
from .middleware.idempotency import install_idempotency

# IMPORTA MODELOS antes de create_all
from .models import customer as _customer_models
from .models import drawer as _drawer_models
from .models import product as _product_models
from .models import promotion as _promotion_models
from .models import sale as _sale_models
from .models import scan as _scan_models
from .routers import cart, checkout, coupon, drawer, health, sales, scan

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

# Crea tablas faltantes (desarrollo)
Base.metadata.create_all(bind=engine)

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.exception_handler(PosError)
async def pos_error_handler(request: Request, exc: PosError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


install_idempotency(app)
app.include_router(health.router)
app.include_router(scan.router)
app.include_router(cart.router)
app.include_router(checkout.router)
app.include_router(drawer.router)
app.include_router(coupon.router)
app.include_router(sales.router)
