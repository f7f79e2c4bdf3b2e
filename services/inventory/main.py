"""Inventory service API built with FastAPI.

Serves the product catalog with per-size stock and applies the stock
decrements issued after a settled payment. Decrements clamp at zero: the
storefront has already taken the money, so the request is never refused
for insufficient stock.
"""

import logging
import time
import uuid
from typing import List

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from repo import InventoryRepo, engine, init_db

app = FastAPI(title="Inventory Service")

ProductId = constr(pattern=r"^[A-Za-z0-9_-]{1,64}$")

logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait for the database to accept connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


class ProductOut(BaseModel):
    id: str
    name: str
    category: str = ""
    price: str
    image_urls: List[str] = []
    stock: dict[str, int]


class DecrementRequest(BaseModel):
    """One aggregated (product, size) decrement.

    Attributes:
        product_id: Catalog product id.
        size: Size label.
        quantity: Units sold; positive.
    """

    product_id: ProductId
    size: str = Field(min_length=1, max_length=32)
    quantity: int = Field(gt=0)


class DecrementResponse(BaseModel):
    product_id: str
    size: str
    remaining: int


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/products", response_model=List[ProductOut])
def list_products():
    return InventoryRepo().list_products()


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str):
    product = InventoryRepo().get_product(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    return product


@app.post("/stock/decrement", response_model=DecrementResponse)
def decrement_stock(req: DecrementRequest, request: Request):
    """Decrement stock for one (product, size), clamped at zero.

    Raises:
        HTTPException: 404 when the product does not exist.
    """
    remaining = InventoryRepo().decrement(req.product_id, req.size, req.quantity)
    if remaining is None:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    logger.info(
        "stock decremented",
        extra={
            "request_id": getattr(request.state, "request_id", "-"),
            "product_id": req.product_id,
            "size": req.size,
            "quantity": req.quantity,
            "remaining": remaining,
        },
    )
    return DecrementResponse(product_id=req.product_id, size=req.size, remaining=remaining)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
