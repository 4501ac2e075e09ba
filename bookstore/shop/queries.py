"""
Shop Service — query handlers (read side)
"""

from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import books, customers, order_items, orders

UNKNOWN_CUSTOMER = "unknown"


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


async def get_book(session: AsyncSession, book_id: int) -> dict | None:
    row = (await session.execute(select(books).where(books.c.id == book_id))).mappings().first()
    return dict(row) if row else None


async def list_books(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(books).order_by(books.c.title))
    return [dict(row) for row in result.mappings()]


async def list_customers(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(customers).order_by(customers.c.name))
    return [dict(row) for row in result.mappings()]


async def _items_for(session: AsyncSession, order_ids: list[int]) -> dict[int, list[dict]]:
    if not order_ids:
        return {}
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.order_id, order_items.c.position)
    )
    grouped: dict[int, list[dict]] = {oid: [] for oid in order_ids}
    for row in result.mappings():
        grouped[row["order_id"]].append(
            {
                "book_id": row["book_id"],
                "book_title": row["book_title"],
                "quantity": row["quantity"],
                "unit_price": _money(row["unit_price"]),
            }
        )
    return grouped


async def _customer_names(session: AsyncSession, emails: set[str]) -> dict[str, str]:
    """Best-effort display lookup; orders only carry the e-mail."""
    if not emails:
        return {}
    result = await session.execute(
        select(customers.c.email, customers.c.name).where(customers.c.email.in_(emails))
    )
    return {row.email: row.name for row in result}


def _order_view(row, items: list[dict], names: dict[str, str]) -> dict:
    return {
        "id": row["id"],
        "order_date": row["order_date"],
        "customer_email": row["customer_email"],
        "customer": names.get(row["customer_email"], UNKNOWN_CUSTOMER),
        "total_amount": _money(row["total_amount"]),
        "status": row["status"],
        "items": items,
    }


async def get_order(session: AsyncSession, order_id: int) -> dict | None:
    row = (await session.execute(select(orders).where(orders.c.id == order_id))).mappings().first()
    if row is None:
        return None
    items = await _items_for(session, [order_id])
    names = await _customer_names(session, {row["customer_email"]})
    return _order_view(row, items[order_id], names)


async def list_orders(session: AsyncSession, page: int | None = None, page_size: int | None = None) -> dict:
    """Newest first. Without a page/page_size pair everything is returned as one page."""
    total = (await session.execute(select(func.count()).select_from(orders))).scalar_one()
    query = select(orders).order_by(orders.c.order_date.desc(), orders.c.id.desc())
    paged = bool(page and page_size and page > 0 and page_size > 0)
    if paged:
        query = query.offset((page - 1) * page_size).limit(page_size)
    rows = (await session.execute(query)).mappings().all()

    items = await _items_for(session, [row["id"] for row in rows])
    names = await _customer_names(session, {row["customer_email"] for row in rows})
    views = [_order_view(row, items[row["id"]], names) for row in rows]
    if not paged:
        page, page_size = 1, len(views)
    return {
        "items": views,
        "total_count": total,
        "page": page,
        "page_size": page_size,
        "has_more": page * page_size < total if paged else False,
    }
