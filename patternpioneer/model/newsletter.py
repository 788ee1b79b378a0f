from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import NewsletterSubscription


async def get_subscription(
    db: AsyncSession, email: str
) -> Optional[NewsletterSubscription]:
    result = await db.execute(
        select(NewsletterSubscription)
        .where(NewsletterSubscription.email == email)
    )
    return result.scalars().first()


async def subscribe(
    db: AsyncSession, email: str, source: str
) -> NewsletterSubscription:
    row = NewsletterSubscription(email=email, source=source)
    db.add(row)
    await db.flush()
    return row
