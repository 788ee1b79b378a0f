# model/credits.py
"""
Subscription credits ledger.

Every change to a user's credits is a signed row in credit_transactions:
- grants (subscription renewals, refunds, admin adjustments) are positive,
  expire CREDIT_TTL_DAYS after they are made and track their unspent
  `remaining`
- debits (pattern purchases, expirations) are negative and never expire

available = sum(amount) over all rows
            - sum(remaining) over grants that lapsed but were not swept yet

Spending consumes `remaining` from the oldest live grants first (FIFO). The
expiry sweep marks lapsed grants and books their unspent remainder as an
`expiration` debit, after which the plain sum of amounts is the balance.

None of these functions commit: callers own the transaction.
"""

from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import CREDIT_TTL_DAYS, EXPIRING_SOON_DAYS
from ..errors import InsufficientCredits, log_error
from ..helpers import DAY_SECONDS, now_ts, to_iso
from .db import CreditTransaction

logger = structlog.get_logger()

# Transaction types
TX_SUBSCRIPTION_RENEWAL = "subscription_renewal"
TX_REFUND = "refund"
TX_ADMIN_ADJUSTMENT = "admin_adjustment"
TX_PATTERN_PURCHASE = "pattern_purchase"
TX_EXPIRATION = "expiration"

GRANT_TYPES = (TX_SUBSCRIPTION_RENEWAL, TX_REFUND, TX_ADMIN_ADJUSTMENT)

CREDIT_TTL_SECONDS = CREDIT_TTL_DAYS * DAY_SECONDS


SQL_AVAILABLE_CREDITS = r"""
SELECT
    COALESCE(SUM(amount), 0)
  - COALESCE(SUM(
        CASE WHEN amount > 0
              AND is_expired = :expired
              AND expires_at IS NOT NULL
              AND expires_at <= :now
             THEN COALESCE(remaining, 0)
             ELSE 0
        END
    ), 0)
FROM credit_transactions
WHERE user_id = :user_id
"""


# ------------------------------------------------------------------------------
# Balance
# ------------------------------------------------------------------------------

def balance_from_rows(rows: Iterable[Any], now: float) -> int:
    """
    Client-side twin of SQL_AVAILABLE_CREDITS.
    """
    total = 0
    lapsed = 0
    for row in rows:
        total += int(row.amount)
        if (
            row.amount > 0
            and not row.is_expired
            and row.expires_at is not None
            and row.expires_at <= now
        ):
            lapsed += int(row.remaining or 0)
    return total - lapsed


async def _user_rows(db: AsyncSession, user_id: str) -> List[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(CreditTransaction.user_id == user_id)
    )
    return list(result.scalars().all())


async def get_available_credits(
    db: AsyncSession, user_id: str, now: Optional[float] = None
) -> int:
    """
    Available (non-expired) credits for a user.

    Uses the SQL aggregate; if that fails the session is rolled back and the
    balance is summed client-side from the raw rows instead. Call this before
    staging any writes on `db`.
    """
    now = now_ts() if now is None else now
    try:
        value = (await db.execute(
            text(SQL_AVAILABLE_CREDITS),
            {"user_id": user_id, "now": now, "expired": False},
        )).scalar_one()
        return int(value or 0)
    except SQLAlchemyError as e:
        log_error("Get available credits", e)
        await db.rollback()

    rows = await _user_rows(db, user_id)
    return balance_from_rows(rows, now)


# ------------------------------------------------------------------------------
# Writes
# ------------------------------------------------------------------------------

async def add_credits(
    db: AsyncSession,
    user_id: str,
    amount: int,
    transaction_type: str,
    description: Optional[str] = None,
    subscription_id: Optional[str] = None,
    now: Optional[float] = None,
) -> CreditTransaction:
    if transaction_type not in GRANT_TYPES:
        raise ValueError(f"not a grant type: {transaction_type}")
    if not isinstance(amount, int) or amount <= 0:
        raise ValueError("amount must be a positive integer")

    now = now_ts() if now is None else now
    tx = CreditTransaction(
        user_id=user_id,
        amount=amount,
        transaction_type=transaction_type,
        description=description,
        subscription_id=subscription_id,
        expires_at=now + CREDIT_TTL_SECONDS,
        remaining=amount,
        is_expired=False,
        created_at=now,
    )
    db.add(tx)
    await db.flush()
    logger.info("credits.granted", user_id=user_id, amount=amount,
                transaction_type=transaction_type)
    return tx


async def spend_credits(
    db: AsyncSession,
    user_id: str,
    amount: int,
    pattern_id: str,
    description: Optional[str] = None,
    now: Optional[float] = None,
) -> CreditTransaction:
    """
    Spend `amount` credits on a pattern, oldest grants first.

    The live grants are locked and re-read before anything is decided, so a
    balance read earlier in the request (or by a concurrent request) never
    lets the ledger go negative. Raises InsufficientCredits if the locked
    grants hold fewer than `amount` credits.
    """
    if amount <= 0:
        raise ValueError("amount must be positive")

    now = now_ts() if now is None else now
    grants = (await db.execute(
        select(CreditTransaction)
        .where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.amount > 0,
            CreditTransaction.is_expired.is_(False),
            CreditTransaction.remaining > 0,
            CreditTransaction.expires_at > now,
        )
        .order_by(CreditTransaction.created_at, CreditTransaction.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalars().all()

    # the unspent remainder of live grants is exactly the available balance
    spendable = sum(int(g.remaining) for g in grants)
    if spendable < amount:
        raise InsufficientCredits(spendable, amount)

    left = amount
    for grant in grants:
        if left == 0:
            break
        take = min(grant.remaining, left)
        grant.remaining -= take
        left -= take

    tx = CreditTransaction(
        user_id=user_id,
        amount=-amount,
        transaction_type=TX_PATTERN_PURCHASE,
        pattern_id=pattern_id,
        description=(
            description or f"Purchased pattern with {amount} credit(s)"
        ),
        expires_at=None,
        remaining=None,
        is_expired=False,
        created_at=now,
    )
    db.add(tx)
    await db.flush()
    logger.info("credits.spent", user_id=user_id, amount=amount,
                pattern_id=pattern_id)
    return tx


async def expire_old_credits(
    db: AsyncSession, now: Optional[float] = None
) -> Dict[str, int]:
    """
    Sweep grants whose expiry has passed.
    Returns {"expired_count": grants swept, "credits_expired": unspent total}.
    """
    now = now_ts() if now is None else now

    lapsed = (await db.execute(
        select(CreditTransaction)
        .where(
            CreditTransaction.amount > 0,
            CreditTransaction.is_expired.is_(False),
            CreditTransaction.expires_at < now,
        )
        .order_by(CreditTransaction.created_at)
        .with_for_update()
    )).scalars().all()

    expired_count = 0
    credits_expired = 0
    for grant in lapsed:
        unspent = int(grant.remaining or 0)
        grant.is_expired = True
        grant.remaining = 0
        if unspent > 0:
            db.add(CreditTransaction(
                user_id=grant.user_id,
                amount=-unspent,
                transaction_type=TX_EXPIRATION,
                description=(
                    f"{unspent} credit(s) expired after "
                    f"{CREDIT_TTL_DAYS} days"
                ),
                expires_at=None,
                remaining=None,
                is_expired=False,
                created_at=now,
            ))
        expired_count += 1
        credits_expired += unspent

    await db.flush()
    logger.info("credits.expired", expired_count=expired_count,
                credits_expired=credits_expired)
    return {
        "expired_count": expired_count,
        "credits_expired": credits_expired,
    }


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def get_credit_transactions(
    db: AsyncSession, user_id: str, limit: int = 50
) -> List[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc(),
                  CreditTransaction.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_expiring_credits(
    db: AsyncSession,
    user_id: str,
    within_days: int = EXPIRING_SOON_DAYS,
    now: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """
    Live grants that still hold credits and expire within `within_days`.
    """
    now = now_ts() if now is None else now
    horizon = now + within_days * DAY_SECONDS
    result = await db.execute(
        select(CreditTransaction)
        .where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.amount > 0,
            CreditTransaction.is_expired.is_(False),
            CreditTransaction.remaining > 0,
            CreditTransaction.expires_at > now,
            CreditTransaction.expires_at < horizon,
        )
        .order_by(CreditTransaction.expires_at)
    )
    return [
        {"amount": int(tx.remaining), "expires_at": to_iso(tx.expires_at)}
        for tx in result.scalars().all()
    ]


def transaction_to_dict(tx: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "amount": tx.amount,
        "transaction_type": tx.transaction_type,
        "description": tx.description,
        "pattern_id": tx.pattern_id,
        "subscription_id": tx.subscription_id,
        "expires_at": to_iso(tx.expires_at),
        "is_expired": bool(tx.is_expired),
        "created_at": to_iso(tx.created_at),
    }
