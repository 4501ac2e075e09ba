"""
Shop Service — relational schema

Books, customers and orders. An order stores the customer's e-mail rather
than a foreign key, and each line keeps the unit price the book had when the
order was placed.
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

metadata = MetaData()

books = Table(
    "books",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(300), nullable=False),
    Column("author", String(200), nullable=False),
    Column("isbn", String(50), nullable=False, default=""),
    Column("price", Numeric(10, 2), nullable=False),
    Column("stock", Integer, nullable=False, default=0),
)

customers = Table(
    "customers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False),
    Column("email", String(320), nullable=False, index=True),
    Column("phone", String(50), nullable=False, default=""),
    Column("address", String(500), nullable=False, default=""),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_date", DateTime(timezone=True), nullable=False),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("customer_email", String(320), nullable=False, index=True),
    Column("customer_name", String(200), nullable=False, default=""),
    Column("status", String(50), nullable=False, default="Pending"),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("position", Integer, nullable=False),
    Column("book_id", Integer, nullable=False),
    Column("book_title", String(300), nullable=False, default=""),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(10, 2), nullable=False),
)


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """Create missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
