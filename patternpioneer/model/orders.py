from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso
from .db import Order, OrderItem


async def get_order_by_checkout_session(
    db: AsyncSession, checkout_session_id: str
) -> Optional[Order]:
    result = await db.execute(
        select(Order).where(
            Order.stripe_checkout_session_id == checkout_session_id
        )
    )
    return result.scalars().first()


async def create_order(
    db: AsyncSession,
    *,
    email: str,
    total: int,
    currency: str,
    user_id: Optional[str] = None,
    status: str = "completed",
    payment_intent_id: Optional[str] = None,
    checkout_session_id: Optional[str] = None,
) -> Order:
    ts = now_ts()
    order = Order(
        user_id=user_id,
        email=email,
        total=total,
        currency=currency,
        status=status,
        stripe_payment_intent_id=payment_intent_id,
        stripe_checkout_session_id=checkout_session_id,
        created_at=ts,
        updated_at=ts,
    )
    db.add(order)
    await db.flush()
    return order


async def add_order_item(
    db: AsyncSession,
    order_id: str,
    pattern_name: str,
    price: int,
    pattern_id: Optional[str] = None,
) -> OrderItem:
    item = OrderItem(order_id=order_id, pattern_id=pattern_id,
                     pattern_name=pattern_name, price=price)
    db.add(item)
    await db.flush()
    return item


async def list_orders(
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 200,
) -> List[Dict[str, Any]]:
    stmt = select(Order).order_by(Order.created_at.desc()).limit(limit)
    if user_id is not None and email is not None:
        stmt = stmt.where((Order.user_id == user_id) | (Order.email == email))
    elif user_id is not None:
        stmt = stmt.where(Order.user_id == user_id)
    elif email is not None:
        stmt = stmt.where(Order.email == email)
    orders = list((await db.execute(stmt)).scalars().all())
    if not orders:
        return []

    items = (await db.execute(
        select(OrderItem)
        .where(OrderItem.order_id.in_([o.id for o in orders]))
        .order_by(OrderItem.created_at)
    )).scalars().all()
    by_order: Dict[str, List[OrderItem]] = {}
    for item in items:
        by_order.setdefault(item.order_id, []).append(item)

    return [order_to_dict(o, by_order.get(o.id, [])) for o in orders]


def order_to_dict(o: Order, items: List[OrderItem]) -> Dict[str, Any]:
    return {
        "id": o.id,
        "email": o.email,
        "total": o.total,
        "currency": o.currency,
        "status": o.status,
        "created_at": to_iso(o.created_at),
        "items": [
            {
                "pattern_id": i.pattern_id,
                "pattern_name": i.pattern_name,
                "price": i.price,
            }
            for i in items
        ],
    }
