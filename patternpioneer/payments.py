from abc import ABC, abstractmethod
import json
from typing import Dict, List, Optional, Sequence, TypedDict

import stripe
import structlog
from fastapi import HTTPException
from starlette.concurrency import run_in_threadpool

from .config import TRIAL_PERIOD_DAYS
from .errors import PaymentError

logger = structlog.get_logger()


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CheckoutSessionResult(TypedDict):
    session_id: str
    url: str


class LineItem(TypedDict):
    description: Optional[str]
    amount_total: int  # cents


class CartLine(TypedDict):
    name: str
    unit_amount: int  # cents


class PaymentAdapter(ABC):
    @abstractmethod
    async def create_checkout_session(
        self,
        lines: Sequence[CartLine],
        pattern_ids: Sequence[str],
        customer_email: Optional[str],
        currency: str = "eur",
    ) -> CheckoutSessionResult: ...

    @abstractmethod
    async def create_customer(
        self, email: str, name: Optional[str], user_id: str
    ) -> str: ...

    @abstractmethod
    async def create_subscription_checkout(
        self, customer_id: str, price_id: str, user_id: str, plan_type: str
    ) -> CheckoutSessionResult: ...

    # returns the portal URL
    @abstractmethod
    async def create_portal_session(self, customer_id: str) -> str: ...

    @abstractmethod
    async def list_line_items(self, session_id: str) -> List[LineItem]: ...

    # verified event as a plain dict
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: Dict[str, str]) -> dict:
        ...


# ----------------------------
# Stripe implementation
# ----------------------------
class StripePayments(PaymentAdapter):
    """
    Hosted Stripe Checkout + Billing Portal.

    The SDK is synchronous, so every call runs in the threadpool.
    """

    def __init__(self, api_key: str, webhook_secret: str, app_url: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.app_url = app_url

    async def _call(self, fn, *args, **kwargs):
        try:
            return await run_in_threadpool(
                fn, *args, api_key=self.api_key, **kwargs
            )
        except stripe.StripeError as e:
            raise PaymentError(str(e)) from e

    async def create_checkout_session(
        self,
        lines: Sequence[CartLine],
        pattern_ids: Sequence[str],
        customer_email: Optional[str],
        currency: str = "eur",
    ) -> CheckoutSessionResult:
        params = dict(
            mode="payment",
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": line["name"]},
                        "unit_amount": line["unit_amount"],
                    },
                    "quantity": 1,
                }
                for line in lines
            ],
            # pattern ids in line order; the webhook maps them back
            metadata={"items": json.dumps(list(pattern_ids))},
            success_url=(
                f"{self.app_url}/checkout/success"
                "?session_id={CHECKOUT_SESSION_ID}"
            ),
            cancel_url=f"{self.app_url}/cart",
        )
        if customer_email:
            params["customer_email"] = customer_email
        session = await self._call(stripe.checkout.Session.create, **params)
        return {"session_id": session.id, "url": session.url}

    async def create_customer(
        self, email: str, name: Optional[str], user_id: str
    ) -> str:
        params = dict(email=email, metadata={"user_id": user_id})
        if name:
            params["name"] = name
        customer = await self._call(stripe.Customer.create, **params)
        return customer.id

    async def create_subscription_checkout(
        self, customer_id: str, price_id: str, user_id: str, plan_type: str
    ) -> CheckoutSessionResult:
        session = await self._call(
            stripe.checkout.Session.create,
            mode="subscription",
            payment_method_types=["card"],
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=f"{self.app_url}/account/subscription?success=true",
            cancel_url=f"{self.app_url}/account/subscription?canceled=true",
            subscription_data={
                "metadata": {"user_id": user_id, "plan_type": plan_type},
                "trial_period_days": TRIAL_PERIOD_DAYS,
            },
            allow_promotion_codes=True,
        )
        return {"session_id": session.id, "url": session.url}

    async def create_portal_session(self, customer_id: str) -> str:
        portal = await self._call(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=f"{self.app_url}/account/subscription",
        )
        return portal.url

    async def list_line_items(self, session_id: str) -> List[LineItem]:
        items = await self._call(
            stripe.checkout.Session.list_line_items,
            session_id,
            expand=["data.price.product"],
            limit=100,
        )
        return [
            {
                "description": getattr(item, "description", None),
                "amount_total": int(getattr(item, "amount_total", 0) or 0),
            }
            for item in items.data
        ]

    def verify_webhook(self, payload: bytes, headers: Dict[str, str]) -> dict:
        sig = headers.get("stripe-signature")
        if not sig:
            raise HTTPException(status_code=400,
                                detail="Missing stripe-signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), sig, self.webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook.signature_failed", error=str(e))
            raise HTTPException(
                status_code=400,
                detail="Webhook signature verification failed",
            )
        try:
            return json.loads(payload.decode("utf-8"))
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
