from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import to_iso
from .db import Pattern


async def get_patterns(db: AsyncSession) -> List[Pattern]:
    result = await db.execute(
        select(Pattern)
        .where(Pattern.is_active.is_(True))
        .order_by(Pattern.created_at.desc())
    )
    return list(result.scalars().all())


async def get_pattern_by_slug(
    db: AsyncSession, slug: str
) -> Optional[Pattern]:
    result = await db.execute(
        select(Pattern).where(Pattern.slug == slug,
                              Pattern.is_active.is_(True))
    )
    return result.scalars().first()


async def get_pattern_by_id(
    db: AsyncSession, pattern_id: str, active_only: bool = True
) -> Optional[Pattern]:
    stmt = select(Pattern).where(Pattern.id == pattern_id)
    if active_only:
        stmt = stmt.where(Pattern.is_active.is_(True))
    return (await db.execute(stmt)).scalars().first()


async def get_patterns_by_ids(
    db: AsyncSession, pattern_ids: Sequence[str]
) -> Dict[str, Pattern]:
    if not pattern_ids:
        return {}
    result = await db.execute(
        select(Pattern).where(Pattern.id.in_(list(pattern_ids)),
                              Pattern.is_active.is_(True))
    )
    return {p.id: p for p in result.scalars().all()}


def pattern_to_dict(p: Pattern) -> Dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "slug": p.slug,
        "description": p.description,
        "image_url": p.image_url,
        "price": p.price,
        "is_active": bool(p.is_active),
        "created_at": to_iso(p.created_at),
        "updated_at": to_iso(p.updated_at),
    }
