from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.config import AUTO_CREATE_SCHEMA, LOG_LEVEL
from app.core.middleware import TenantMiddleware
from app.db.base import Base
from app.db.session import engine

# Register models
from app.db import models  # noqa: F401

from services.errors import StockError
from services.bookings.api import router as bookings_router
from services.wms.inventory_ops.allocation_api import router as allocation_router
from services.wms.inventory_ops.pickup_api import router as pickup_router
from services.wms.inventory_ops.putaway_api import router as putaway_router
from services.wms.inventory_ops.records_api import router as records_router

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Freight Stock Engine")
app.add_middleware(TenantMiddleware)


@app.exception_handler(StockError)
async def _stock_error(request: Request, exc: StockError):
    return JSONResponse(status_code=exc.code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def _bad_request(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"message": "Invalid request body", "detail": jsonable_encoder(exc.errors())})


@app.exception_handler(IntegrityError)
async def _conflict(request: Request, exc: IntegrityError):
    # A concurrent writer won the race for a unique value (an LPN number)
    logger.warning("Integrity conflict on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(status_code=409, content={"message": "Conflicting write, retry the request"})


@app.exception_handler(SQLAlchemyError)
async def _db_error(request: Request, exc: SQLAlchemyError):
    # The request session is closed (and its transaction rolled back) by get_db
    logger.exception("Persistence failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Failed to process request"})


app.include_router(putaway_router)
app.include_router(records_router)
app.include_router(allocation_router)
app.include_router(pickup_router)
app.include_router(bookings_router)


@app.on_event("startup")
async def _startup():
    # Dev-friendly schema creation (migrations are available for real upgrades)
    if AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)


@app.get("/health")
def health():
    return {"ok": True}
