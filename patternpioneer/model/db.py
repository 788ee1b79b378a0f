from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncConnection

from ..helpers import new_id, now_ts


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Pattern(Base):
    __tablename__ = "patterns"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    image_url = Column(String, nullable=False)
    # public preview file handed out through the free-download flow
    free_image_url = Column(String, nullable=True)
    price = Column(Integer, nullable=False)  # cents
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    # NULL for users created by checkout webhooks
    password_hash = Column(String, nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    stripe_customer_id = Column(String, nullable=True, unique=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    email = Column(String, nullable=False)
    total = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="EUR")

    # pending | completed | failed
    status = Column(String, nullable=False, default="pending")
    stripe_payment_intent_id = Column(String, nullable=True)
    stripe_checkout_session_id = Column(String, nullable=True, unique=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    pattern_id = Column(String, ForeignKey("patterns.id"), nullable=True)
    pattern_name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # cents
    created_at = Column(Float, nullable=False, default=now_ts)


class Download(Base):
    __tablename__ = "downloads"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    email = Column(String, nullable=False, index=True)
    pattern_id = Column(String, ForeignKey("patterns.id"), nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True)
    is_free = Column(Boolean, nullable=False, default=False)
    download_token = Column(String, nullable=True, unique=True)
    download_count = Column(Integer, nullable=False, default=0)
    last_downloaded_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False,
                     index=True)
    stripe_customer_id = Column(String, nullable=False)
    stripe_subscription_id = Column(String, nullable=False, unique=True)
    stripe_price_id = Column(String, nullable=True)
    plan_type = Column(String, nullable=False)  # monthly | yearly

    # trialing | active | past_due | canceled | ... (as reported by Stripe)
    status = Column(String, nullable=False)
    current_period_start = Column(Float, nullable=True)
    current_period_end = Column(Float, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    # signed: grants > 0, debits < 0
    amount = Column(Integer, nullable=False)
    transaction_type = Column(String, nullable=False)
    description = Column(String, nullable=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"),
                             nullable=True)
    pattern_id = Column(String, ForeignKey("patterns.id"), nullable=True)

    # grants only; debits never expire and carry NULL in both columns
    expires_at = Column(Float, nullable=True)
    remaining = Column(Integer, nullable=True)
    is_expired = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False, default=now_ts)

    __table_args__ = (
        Index("credit_tx_user_created_idx", "user_id", "created_at"),
    )


class Favorite(Base):
    __tablename__ = "favorites"
    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False)
    pattern_id = Column(String, ForeignKey("patterns.id"), nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)

    __table_args__ = (
        UniqueConstraint("email", "pattern_id", name="favorites_email_pattern"),
    )


class NewsletterSubscription(Base):
    __tablename__ = "newsletter_subscriptions"
    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False, unique=True)
    source = Column(String, nullable=False, default="homepage")
    subscribed_at = Column(Float, nullable=False, default=now_ts)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False, default=now_ts)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
