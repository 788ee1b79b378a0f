"""
What a customer may download (downloads) and what they bookmarked
(favorites).
"""
import secrets
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso
from .db import Download, Favorite, Pattern


# ----------------------------
# Downloads
# ----------------------------
async def grant_download(
    db: AsyncSession,
    *,
    email: str,
    pattern_id: str,
    user_id: Optional[str] = None,
    order_id: Optional[str] = None,
    is_free: bool = False,
    download_token: Optional[str] = None,
) -> Download:
    download = Download(
        user_id=user_id,
        email=email,
        pattern_id=pattern_id,
        order_id=order_id,
        is_free=is_free,
        download_token=download_token,
        download_count=0,
    )
    db.add(download)
    await db.flush()
    return download


async def find_paid_download(
    db: AsyncSession,
    pattern_id: str,
    *,
    email: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Optional[Download]:
    stmt = select(Download).where(Download.pattern_id == pattern_id,
                                  Download.is_free.is_(False))
    if user_id is not None and email is not None:
        stmt = stmt.where((Download.user_id == user_id)
                          | (Download.email == email))
    elif user_id is not None:
        stmt = stmt.where(Download.user_id == user_id)
    else:
        stmt = stmt.where(Download.email == email)
    return (await db.execute(stmt.limit(1))).scalars().first()


async def find_free_download(
    db: AsyncSession, email: str, pattern_id: str
) -> Optional[Download]:
    result = await db.execute(
        select(Download).where(Download.email == email,
                               Download.pattern_id == pattern_id,
                               Download.is_free.is_(True))
    )
    return result.scalars().first()


async def get_free_download_by_token(
    db: AsyncSession, token: str
) -> Optional[Download]:
    result = await db.execute(
        select(Download).where(Download.download_token == token,
                               Download.is_free.is_(True))
    )
    return result.scalars().first()


def new_download_token() -> str:
    return secrets.token_urlsafe(24)


async def record_download(db: AsyncSession, download: Download) -> None:
    download.download_count = (download.download_count or 0) + 1
    download.last_downloaded_at = now_ts()
    await db.flush()


async def list_downloads(
    db: AsyncSession, email: str, user_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    owner = Download.email == email
    if user_id is not None:
        owner = owner | (Download.user_id == user_id)
    result = await db.execute(
        select(Download, Pattern)
        .join(Pattern, Pattern.id == Download.pattern_id)
        .where(owner)
        .order_by(Download.created_at.desc())
    )
    return [
        download_to_dict(d, pattern_name=p.name, pattern_slug=p.slug)
        for d, p in result.all()
    ]


def download_to_dict(
    d: Download,
    pattern_name: Optional[str] = None,
    pattern_slug: Optional[str] = None,
) -> Dict[str, Any]:
    out = {
        "id": d.id,
        "pattern_id": d.pattern_id,
        "order_id": d.order_id,
        "is_free": bool(d.is_free),
        "download_count": d.download_count,
        "last_downloaded_at": to_iso(d.last_downloaded_at),
        "created_at": to_iso(d.created_at),
    }
    if pattern_name is not None:
        out["pattern_name"] = pattern_name
        out["pattern_slug"] = pattern_slug
    return out


# ----------------------------
# Favorites
# ----------------------------
async def toggle_favorite(
    db: AsyncSession, email: str, pattern_id: str
) -> bool:
    """
    Flip the favorite flag for (email, pattern). Returns the new state.
    """
    existing = (await db.execute(
        select(Favorite).where(Favorite.email == email,
                               Favorite.pattern_id == pattern_id)
    )).scalars().first()

    if existing is not None:
        await db.execute(delete(Favorite).where(Favorite.id == existing.id))
        return False

    db.add(Favorite(email=email, pattern_id=pattern_id))
    await db.flush()
    return True


async def list_favorite_patterns(
    db: AsyncSession, email: str
) -> List[Pattern]:
    result = await db.execute(
        select(Pattern)
        .join(Favorite, Favorite.pattern_id == Pattern.id)
        .where(Favorite.email == email)
        .order_by(Favorite.created_at.desc())
    )
    return list(result.scalars().all())
