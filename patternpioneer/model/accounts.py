from typing import Any, Dict, List, Optional, Sequence

import bcrypt
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import normalize_email, now_ts, to_iso
from .db import Subscription, User

logger = structlog.get_logger()

# statuses that entitle a user to spend credits
ACTIVE_STATUSES = ("active", "trialing")
# statuses shown on the account page
VISIBLE_STATUSES = ("active", "trialing", "past_due")

MIN_PASSWORD_LENGTH = 8


# ----------------------------
# Passwords
# ----------------------------
# bcrypt only looks at the first 72 bytes; newer releases reject longer input
BCRYPT_MAX_BYTES = 72


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8")[:BCRYPT_MAX_BYTES],
                         bcrypt.gensalt(rounds=10)).decode("utf-8")


def check_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return bcrypt.checkpw(password.encode("utf-8")[:BCRYPT_MAX_BYTES],
                          password_hash.encode("utf-8"))


# ----------------------------
# Users
# ----------------------------
async def get_user_by_id(db: AsyncSession, user_id: str) -> Optional[User]:
    return await db.get(User, user_id)


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.email == normalize_email(email))
    )
    return result.scalars().first()


async def get_user_by_customer_id(
    db: AsyncSession, customer_id: str
) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.stripe_customer_id == customer_id)
    )
    return result.scalars().first()


async def create_user(
    db: AsyncSession,
    email: str,
    password_hash: Optional[str] = None,
    name: Optional[str] = None,
) -> User:
    user = User(email=normalize_email(email), password_hash=password_hash,
                name=name)
    db.add(user)
    await db.flush()
    return user


async def find_or_create_user(db: AsyncSession, email: str) -> User:
    user = await get_user_by_email(db, email)
    if user is not None:
        return user
    user = await create_user(db, email)
    logger.info("user.created", user_id=user.id, source="checkout")
    return user


async def set_stripe_customer_id(
    db: AsyncSession, user: User, customer_id: str
) -> None:
    user.stripe_customer_id = customer_id
    user.updated_at = now_ts()
    await db.flush()


async def list_users(db: AsyncSession, limit: int = 200) -> List[User]:
    result = await db.execute(
        select(User).order_by(User.created_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


def user_to_dict(u: User) -> Dict[str, Any]:
    return {
        "id": u.id,
        "email": u.email,
        "name": u.name,
        "is_admin": bool(u.is_admin),
        "stripe_customer_id": u.stripe_customer_id,
        "created_at": to_iso(u.created_at),
    }


# ----------------------------
# Subscriptions
# ----------------------------
async def get_active_subscription(
    db: AsyncSession,
    user_id: str,
    statuses: Sequence[str] = ACTIVE_STATUSES,
) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id,
               Subscription.status.in_(list(statuses)))
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def get_subscription_by_stripe_id(
    db: AsyncSession, stripe_subscription_id: str
) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
    )
    return result.scalars().first()


async def upsert_subscription(
    db: AsyncSession, stripe_subscription_id: str, **fields: Any
) -> Subscription:
    sub = await get_subscription_by_stripe_id(db, stripe_subscription_id)
    if sub is None:
        sub = Subscription(stripe_subscription_id=stripe_subscription_id,
                           **fields)
        db.add(sub)
    else:
        for key, value in fields.items():
            setattr(sub, key, value)
        sub.updated_at = now_ts()
    await db.flush()
    return sub


async def set_subscription_status(
    db: AsyncSession, stripe_subscription_id: str, status: str
) -> int:
    result = await db.execute(
        update(Subscription)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
        .values(status=status, updated_at=now_ts())
    )
    return result.rowcount or 0


def subscription_to_dict(s: Subscription) -> Dict[str, Any]:
    return {
        "id": s.id,
        "plan_type": s.plan_type,
        "status": s.status,
        "stripe_subscription_id": s.stripe_subscription_id,
        "current_period_start": to_iso(s.current_period_start),
        "current_period_end": to_iso(s.current_period_end),
        "cancel_at_period_end": bool(s.cancel_at_period_end),
        "created_at": to_iso(s.created_at),
    }
