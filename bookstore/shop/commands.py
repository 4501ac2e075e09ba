"""
Shop Service — command handlers (write side)

Order creation is the entry point of the integration pipeline: the order is
committed here and only afterwards handed to the publisher, so nothing that
happens downstream can undo it.
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..common.errors import NotFound, OutOfStock
from .database import books, customers, order_items, orders


async def create_book(session: AsyncSession, data: dict) -> dict:
    result = await session.execute(insert(books).values(**data))
    await session.commit()
    return {"id": result.inserted_primary_key[0], **data}


async def update_book(session: AsyncSession, book_id: int, changes: dict) -> dict:
    """Edit a book in place. Existing orders keep the price they were placed at."""
    if changes:
        result = await session.execute(update(books).where(books.c.id == book_id).values(**changes))
        if result.rowcount == 0:
            raise NotFound(f"Book {book_id} not found")
        await session.commit()
    row = (await session.execute(select(books).where(books.c.id == book_id))).mappings().first()
    if row is None:
        raise NotFound(f"Book {book_id} not found")
    return dict(row)


async def create_customer(session: AsyncSession, data: dict) -> dict:
    result = await session.execute(insert(customers).values(**data))
    await session.commit()
    return {"id": result.inserted_primary_key[0], **data}


async def create_order(
    session: AsyncSession,
    customer_id: int,
    lines: list[tuple[int, int]],
) -> dict:
    """
    Place an order.

    1. Resolve the customer (its e-mail and name are copied onto the order)
    2. For each line: check and decrement stock, snapshot the unit price
    3. Compute the total once from the snapshots
    4. Insert order + lines and commit

    Raises NotFound for an unknown customer or book and OutOfStock when a
    line asks for more copies than available. Nothing is written then.
    """
    customer = (
        await session.execute(select(customers).where(customers.c.id == customer_id))
    ).mappings().first()
    if customer is None:
        raise NotFound(f"Customer {customer_id} not found")

    items: list[dict] = []
    total = Decimal("0")
    for book_id, quantity in lines:
        book = (await session.execute(select(books).where(books.c.id == book_id))).mappings().first()
        if book is None:
            raise NotFound(f"Book {book_id} not found")

        # Conditional decrement: a concurrent order cannot push stock below zero.
        result = await session.execute(
            update(books)
            .where(books.c.id == book_id, books.c.stock >= quantity)
            .values(stock=books.c.stock - quantity)
        )
        if result.rowcount == 0:
            raise OutOfStock(book["title"], book["stock"])

        unit_price = Decimal(str(book["price"]))
        items.append(
            {
                "book_id": book_id,
                "book_title": book["title"],
                "quantity": quantity,
                "unit_price": unit_price,
            }
        )
        total += unit_price * quantity

    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(orders).values(
            order_date=now,
            total_amount=total,
            customer_email=customer["email"],
            customer_name=customer["name"],
            status="Pending",
        )
    )
    order_id = result.inserted_primary_key[0]
    await session.execute(
        insert(order_items),
        [{"order_id": order_id, "position": i, **item} for i, item in enumerate(items)],
    )
    await session.commit()

    return {
        "id": order_id,
        "order_date": now,
        "items": items,
        "total_amount": total,
        "customer_email": customer["email"],
        "customer_name": customer["name"],
        "status": "Pending",
    }


async def update_order_status(session: AsyncSession, order_id: int, status: str) -> dict | None:
    """
    Overwrite an order's status.

    Returns the order as it now stands, or None when it already had this
    status. Raises NotFound for an unknown order.
    """
    row = (await session.execute(select(orders).where(orders.c.id == order_id))).mappings().first()
    if row is None:
        raise NotFound(f"Order #{order_id} not found")
    if row["status"] == status:
        return None

    await session.execute(update(orders).where(orders.c.id == order_id).values(status=status))
    await session.commit()
    return {**dict(row), "previous_status": row["status"], "status": status}
