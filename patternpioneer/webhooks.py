"""
Stripe webhook event handlers.

Every handler works inside the request's DB session. The dispatcher commits
once the handler is done and records the event id, so replays from Stripe are
no-ops. A failing handler is logged and rolled back; Stripe still gets a 200.
"""
from __future__ import annotations
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import APP_URL, CREDITS_PER_BILLING_CYCLE
from .errors import MailError, log_error
from .helpers import format_eur, normalize_email
from .mailer import EmailItem, ResendMailer
from .model import accounts, library, orders
from .model.credits import TX_SUBSCRIPTION_RENEWAL, add_credits
from .model.db import WebhookEventSeen
from .payments import PaymentAdapter

logger = structlog.get_logger()

Handler = Callable[..., Awaitable[None]]


# ----------------------------
# checkout.session.completed
# ----------------------------
async def handle_checkout_session_completed(
    db: AsyncSession,
    session: Dict[str, Any],
    *,
    payments: PaymentAdapter,
    mailer: ResendMailer,
) -> None:
    session_id = session["id"]
    logger.info("webhook.checkout_session", session_id=session_id)

    if session.get("mode") == "subscription":
        # subscription checkouts are paid for through invoices
        logger.info("webhook.checkout_session.subscription_skipped",
                    session_id=session_id)
        return

    if await orders.get_order_by_checkout_session(db, session_id):
        logger.info("webhook.checkout_session.already_fulfilled",
                    session_id=session_id)
        return

    details = session.get("customer_details") or {}
    email = session.get("customer_email") or details.get("email")
    if not email:
        logger.error("webhook.checkout_session.no_email",
                     session_id=session_id)
        return
    email = normalize_email(email)

    user = await accounts.find_or_create_user(db, email)
    line_items = await payments.list_line_items(session_id)

    total = int(session.get("amount_total") or 0)
    order = await orders.create_order(
        db,
        email=email,
        total=total,
        currency=(session.get("currency") or "eur").upper(),
        user_id=user.id,
        status="completed",
        payment_intent_id=session.get("payment_intent"),
        checkout_session_id=session_id,
    )
    logger.info("order.created", order_id=order.id, email=email)

    pattern_ids = _pattern_ids_from_metadata(session.get("metadata") or {})
    email_items: List[EmailItem] = []
    for index, item in enumerate(line_items):
        pattern_name = item["description"] or "Pattern"
        price = item["amount_total"]
        pattern_id = pattern_ids[index] if index < len(pattern_ids) else None

        await orders.add_order_item(db, order.id, pattern_name, price,
                                    pattern_id=pattern_id)
        if pattern_id:
            await library.grant_download(
                db, email=email, pattern_id=pattern_id, user_id=user.id,
                order_id=order.id,
            )
            email_items.append({
                "pattern_name": pattern_name,
                "price": format_eur(price),
                "download_url": f"{APP_URL}/account/downloads",
            })

    customer_name = details.get("name") or email.split("@")[0]
    order_date = datetime.fromtimestamp(
        order.created_at, tz=timezone.utc
    ).strftime("%B %d, %Y")
    try:
        await mailer.send_order_confirmation(
            email, customer_name, order.id, order_date, email_items,
            format_eur(total),
        )
    except MailError as e:
        # the order stands; the customer still has access via their account
        log_error("Webhook order confirmation email", e)


def _pattern_ids_from_metadata(metadata: Dict[str, Any]) -> List[str]:
    raw = metadata.get("items")
    if not raw:
        return []
    try:
        ids = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("webhook.bad_metadata_items", raw=raw)
        return []
    return [str(i) for i in ids] if isinstance(ids, list) else []


# ----------------------------
# customer.subscription.*
# ----------------------------
async def handle_subscription_update(
    db: AsyncSession, subscription: Dict[str, Any], **_: Any
) -> None:
    logger.info("webhook.subscription_update",
                subscription_id=subscription["id"])

    customer_id = subscription.get("customer")
    items = (subscription.get("items") or {}).get("data") or []
    first = items[0] if items else {}
    price = first.get("price") or {}
    interval = (price.get("recurring") or {}).get("interval")
    plan_type = "yearly" if interval == "year" else "monthly"

    user = None
    if customer_id:
        user = await accounts.get_user_by_customer_id(db, customer_id)
    if user is None:
        user_id = (subscription.get("metadata") or {}).get("user_id")
        if user_id:
            user = await accounts.get_user_by_id(db, user_id)
            if user is not None and customer_id and not user.stripe_customer_id:
                await accounts.set_stripe_customer_id(db, user, customer_id)
    if user is None:
        logger.error("webhook.subscription_update.user_not_found",
                     customer_id=customer_id)
        return

    await accounts.upsert_subscription(
        db,
        subscription["id"],
        user_id=user.id,
        stripe_customer_id=customer_id,
        stripe_price_id=price.get("id"),
        plan_type=plan_type,
        status=subscription.get("status") or "incomplete",
        current_period_start=_period(subscription, first,
                                     "current_period_start"),
        current_period_end=_period(subscription, first, "current_period_end"),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    )


def _period(subscription: Dict[str, Any], item: Dict[str, Any],
            key: str) -> Optional[float]:
    # newer API versions report billing periods on the subscription item
    value = subscription.get(key) or item.get(key)
    return float(value) if value else None


async def handle_subscription_deleted(
    db: AsyncSession, subscription: Dict[str, Any], **_: Any
) -> None:
    logger.info("webhook.subscription_deleted",
                subscription_id=subscription["id"])
    await accounts.set_subscription_status(db, subscription["id"],
                                           "canceled")


# ----------------------------
# invoice.payment_*
# ----------------------------
def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub = invoice.get("subscription")
    if not sub:
        parent = invoice.get("parent") or {}
        sub = (parent.get("subscription_details") or {}).get("subscription")
    if isinstance(sub, dict):
        sub = sub.get("id")
    return sub or None


async def handle_invoice_payment_succeeded(
    db: AsyncSession, invoice: Dict[str, Any], **_: Any
) -> None:
    logger.info("webhook.invoice_paid", invoice_id=invoice.get("id"))

    stripe_subscription_id = _invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        logger.info("webhook.invoice_paid.not_subscription",
                    invoice_id=invoice.get("id"))
        return

    customer_id = invoice.get("customer")
    user = (
        await accounts.get_user_by_customer_id(db, customer_id)
        if customer_id else None
    )
    if user is None:
        logger.error("webhook.invoice_paid.user_not_found",
                     customer_id=customer_id)
        return

    subscription = await accounts.get_subscription_by_stripe_id(
        db, stripe_subscription_id
    )
    if subscription is None:
        logger.error("webhook.invoice_paid.subscription_not_found",
                     subscription_id=stripe_subscription_id)
        return

    await add_credits(
        db,
        user.id,
        CREDITS_PER_BILLING_CYCLE,
        TX_SUBSCRIPTION_RENEWAL,
        f"{CREDITS_PER_BILLING_CYCLE} credits added for "
        f"{subscription.plan_type} subscription renewal",
        subscription_id=subscription.id,
    )


async def handle_invoice_payment_failed(
    db: AsyncSession, invoice: Dict[str, Any], **_: Any
) -> None:
    logger.info("webhook.invoice_failed", invoice_id=invoice.get("id"))
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        return
    await accounts.set_subscription_status(db, stripe_subscription_id,
                                           "past_due")


HANDLERS: Dict[str, Handler] = {
    "checkout.session.completed": handle_checkout_session_completed,
    "customer.subscription.created": handle_subscription_update,
    "customer.subscription.updated": handle_subscription_update,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
}


# ----------------------------
# Dispatcher
# ----------------------------
async def handle_event(
    db: AsyncSession,
    event: Dict[str, Any],
    *,
    payments: PaymentAdapter,
    mailer: ResendMailer,
) -> Dict[str, Any]:
    event_id = event.get("id")
    event_type = event.get("type", "")

    if event_id and await db.get(WebhookEventSeen, event_id) is not None:
        return {"received": True, "idempotent": True}

    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("webhook.unhandled", event_type=event_type)
    else:
        obj = (event.get("data") or {}).get("object") or {}
        try:
            await handler(db, obj, payments=payments, mailer=mailer)
        except Exception as e:
            log_error(f"Webhook {event_type} handler", e)
            await db.rollback()
            return {"received": True}

    if event_id:
        db.add(WebhookEventSeen(idempotency_key=event_id))
    try:
        await db.commit()
    except IntegrityError:
        # an idempotent replay racing the first delivery
        await db.rollback()
        return {"received": True, "idempotent": True}
    return {"received": True}
