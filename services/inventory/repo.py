"""SQLAlchemy repository for the product catalog and per-size stock.

Two tables: ``products`` (id, name, category, price, image urls) and
``size_stock`` (one row per product/size with the available quantity).
Connection settings come from ``DATABASE_URL`` or the ``DB_*`` variables.
"""

import os
from contextlib import contextmanager
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, ForeignKey, Integer, Numeric, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column, relationship, selectinload

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
engine = create_engine(DATABASE_URL, pool_pre_ping=True)

SEED_PRODUCTS = [
    {"id": "prod_tee", "name": "Classic Tee", "category": "tops", "price": Decimal("50.00"),
     "stock": {"S": 5, "M": 10, "L": 0}},
    {"id": "prod_hoodie", "name": "Heavyweight Hoodie", "category": "tops", "price": Decimal("89.99"),
     "stock": {"M": 3, "L": 2, "XL": 1}},
    {"id": "prod_cap", "name": "Logo Cap", "category": "accessories", "price": Decimal("24.50"),
     "stock": {"OS": 25}},
]


class Base(DeclarativeBase):
    pass


class Product(Base):
    __tablename__ = "products"
    id = mapped_column(String(64), primary_key=True)
    name = mapped_column(String(200), nullable=False)
    category = mapped_column(String(64), nullable=False, default="")
    price = mapped_column(Numeric(12, 2), nullable=False)
    image_urls = mapped_column(JSON, nullable=False, default=list)
    sizes = relationship("SizeStock", back_populates="product", cascade="all, delete-orphan")


class SizeStock(Base):
    """Available quantity for one (product, size); never negative."""

    __tablename__ = "size_stock"
    product_id = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    size = mapped_column(String(32), primary_key=True)
    quantity = mapped_column(Integer, nullable=False, default=0)
    product = relationship("Product", back_populates="sizes")


@contextmanager
def get_session():
    with Session(engine) as s:
        yield s


def init_db() -> None:
    """Create tables and seed the demo catalog when it is empty."""
    Base.metadata.create_all(engine)
    with get_session() as s:
        if s.execute(select(Product.id).limit(1)).first():
            return
        for p in SEED_PRODUCTS:
            row = Product(id=p["id"], name=p["name"], category=p["category"], price=p["price"], image_urls=[])
            row.sizes = [SizeStock(size=size, quantity=qty) for size, qty in p["stock"].items()]
            s.add(row)
        s.commit()


def _as_dict(p: Product) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "category": p.category,
        "price": str(p.price),
        "image_urls": list(p.image_urls or []),
        "stock": {s.size: s.quantity for s in p.sizes},
    }


class InventoryRepo:
    """Catalog reads and clamped stock decrements."""

    def list_products(self) -> list[dict]:
        with get_session() as s:
            rows = s.execute(select(Product).options(selectinload(Product.sizes)).order_by(Product.id)).scalars()
            return [_as_dict(p) for p in rows]

    def get_product(self, product_id: str) -> Optional[dict]:
        with get_session() as s:
            p = s.execute(
                select(Product).options(selectinload(Product.sizes)).where(Product.id == product_id)
            ).scalars().first()
            return _as_dict(p) if p else None

    def set_stock(self, product_id: str, size: str, quantity: int) -> None:
        with get_session() as s:
            row = s.get(SizeStock, (product_id, size)) or SizeStock(product_id=product_id, size=size)
            row.quantity = max(0, quantity)
            s.merge(row)
            s.commit()

    def decrement(self, product_id: str, size: str, quantity: int) -> Optional[int]:
        """Subtract ``quantity`` under a row lock, clamping at zero.

        Returns:
            The remaining quantity, or None when the product is unknown. A
            size the product does not carry is treated as zero stock.
        """
        with get_session() as s:
            if s.get(Product, product_id) is None:
                return None
            row = s.execute(
                select(SizeStock)
                .where(SizeStock.product_id == product_id, SizeStock.size == size)
                .with_for_update()
            ).scalars().first()
            if row is None:
                return 0
            row.quantity = max(0, row.quantity - quantity)
            s.commit()
            return row.quantity
