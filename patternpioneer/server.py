from __future__ import annotations
import sys
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse, Response
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from . import config
from .config import (
    DATABASE_URL, APP_URL, PREVIEW_BUCKET, PREMIUM_BUCKET,
    SIGNED_URL_TTL_SECONDS,
)
from .errors import (
    InsufficientCredits, MailError, PaymentError, StorageError, log_error,
    public_error_message,
)
from .helpers import ct_equal, is_valid_email, normalize_email, now_ts, to_iso
from .infra.logs import configure_logging
from .infra.sql import make_async_engine
from .mailer import ResendMailer
from .mailerlite import MailerLite
from .model import User, create_schema
from .model import accounts, catalog, credits, library, orders
from .model import newsletter as newsletter_rows
from .payments import PaymentAdapter, StripePayments
from .storage import SupabaseStorage
from . import webhooks

configure_logging(config.LOG_LEVEL, config.LOG_FORMAT)
logger = structlog.get_logger()

if DATABASE_URL is None:
    logger.error("startup.missing_database_url")
    sys.exit(1)


engine, SessionAsync = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session

payments_adapter: PaymentAdapter = StripePayments(
    config.STRIPE_SECRET_KEY, config.STRIPE_WEBHOOK_SECRET, APP_URL
)
mailer_client = ResendMailer(config.RESEND_API_KEY, config.MAIL_FROM)

app = FastAPI(
    title="Pattern Pioneer",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)


def get_payments() -> PaymentAdapter:
    return payments_adapter


def get_mailer() -> ResendMailer:
    return mailer_client


def get_storage(request: Request) -> SupabaseStorage:
    storage = getattr(request.app.state, "storage", None)
    if storage is None:
        raise RuntimeError("Storage client not initialized")
    return storage


def get_newsletter(request: Request) -> MailerLite:
    client = getattr(request.app.state, "newsletter", None)
    if client is None:
        raise RuntimeError("Newsletter client not initialized")
    return client


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("startup", app_env=config.APP_ENV, app_url=APP_URL,
                database=engine.url.get_backend_name())


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(timeout=10.0)
    app.state.storage = SupabaseStorage(
        app.state.http, config.SUPABASE_URL,
        config.SUPABASE_SERVICE_ROLE_KEY,
    )
    app.state.newsletter = MailerLite(
        app.state.http, config.MAILERLITE_API_KEY,
        config.MAILERLITE_GROUP_ID, config.MAILERLITE_API_URL,
    )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception):
    log_error(f"{request.method} {request.url.path}", exc)
    return ORJSONResponse(status_code=500,
                          content={"detail": public_error_message(exc)})


# ----------------------------
# Helpers
# ----------------------------
async def optional_user(
    request: Request, db: AsyncSession = Depends(get_db)
) -> Optional[User]:
    user_id = request.session.get("user_id")
    if not user_id:
        return None
    return await accounts.get_user_by_id(db, user_id)


async def current_user(
    user: Optional[User] = Depends(optional_user),
) -> User:
    if user is None:
        raise HTTPException(401, detail="Authentication required")
    return user


async def require_admin(user: User = Depends(current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(403, detail="Admin access required")
    return user


def _clamp(limit: int) -> int:
    return max(1, min(limit, 500))


def _text(payload: dict, key: str, strip: bool = True) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise HTTPException(400, detail=f"Field '{key}' must be a string")
    return value.strip() if strip else value


# ----------------------------
# Catalog
# ----------------------------
@app.get("/api/patterns")
async def list_patterns(db: AsyncSession = Depends(get_db)):
    patterns = await catalog.get_patterns(db)
    return {"items": [catalog.pattern_to_dict(p) for p in patterns]}


@app.get("/api/patterns/{slug}")
async def get_pattern(slug: str, db: AsyncSession = Depends(get_db)):
    pattern = await catalog.get_pattern_by_slug(db, slug)
    if pattern is None:
        raise HTTPException(404, detail="Pattern not found")
    return catalog.pattern_to_dict(pattern)


# ----------------------------
# Cart checkout (hosted Stripe Checkout, fulfilled by webhook)
# ----------------------------
@app.post("/api/checkout")
async def create_checkout(
    payload: dict,
    user: Optional[User] = Depends(optional_user),
    db: AsyncSession = Depends(get_db),
    payments: PaymentAdapter = Depends(get_payments),
):
    items = payload.get("items") or []
    if not isinstance(items, list) or not items:
        raise HTTPException(400, detail="Your cart is empty")

    # a digital file is bought at most once per order
    pattern_ids = list(dict.fromkeys(str(i) for i in items))
    found = await catalog.get_patterns_by_ids(db, pattern_ids)
    missing = [i for i in pattern_ids if i not in found]
    if missing:
        raise HTTPException(
            400, detail=f"Unknown or inactive pattern(s): {', '.join(missing)}"
        )

    email = _text(payload, "email") or (
        user.email if user is not None else None
    )
    if email and not is_valid_email(email):
        raise HTTPException(400, detail="Invalid email address")

    lines = [
        {"name": found[i].name, "unit_amount": found[i].price}
        for i in pattern_ids
    ]
    try:
        session = await payments.create_checkout_session(
            lines, pattern_ids, normalize_email(email) if email else None
        )
    except PaymentError as e:
        log_error("Checkout session creation", e)
        raise HTTPException(500, detail=public_error_message(e))
    return session


# ----------------------------
# Credits: buy a pattern with one credit
# ----------------------------
@app.post("/api/patterns/purchase-with-credit")
async def purchase_with_credit(
    payload: dict,
    user: User = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    user_id, email = user.id, user.email
    pattern_id = _text(payload, "pattern_id")
    if not pattern_id:
        raise HTTPException(400, detail="Pattern ID is required")

    pattern = await catalog.get_pattern_by_id(db, pattern_id)
    if pattern is None:
        raise HTTPException(404, detail="Pattern not found")
    pattern_name = pattern.name

    if await library.find_paid_download(db, pattern_id, email=email,
                                        user_id=user_id):
        raise HTTPException(400,
                            detail="You already have access to this pattern")

    if await accounts.get_active_subscription(db, user_id) is None:
        raise HTTPException(
            403, detail="Active subscription required to use credits"
        )

    available = await credits.get_available_credits(db, user_id)
    if available < 1:
        raise HTTPException(
            400,
            detail="Insufficient credits. You need 1 credit to download "
                   "this pattern.",
        )

    try:
        await credits.spend_credits(
            db, user_id, 1, pattern_id,
            f'Purchased "{pattern_name}" with 1 credit',
        )
        download = await library.grant_download(
            db, email=email, pattern_id=pattern_id, user_id=user_id,
        )
        await db.commit()
    except InsufficientCredits as e:
        raise HTTPException(400, detail=str(e))
    except SQLAlchemyError as e:
        log_error("Credit purchase", e)
        await db.rollback()
        raise HTTPException(
            500, detail="Failed to grant access. Please contact support."
        )

    download_info = library.download_to_dict(download)
    remaining = await credits.get_available_credits(db, user_id)
    return {
        "success": True,
        "message": "Pattern purchased successfully with 1 credit",
        "download": download_info,
        "remaining_credits": remaining,
    }


# ----------------------------
# Free downloads (lead magnet)
# ----------------------------
@app.post("/api/patterns/free-download")
async def request_free_download(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    mailer: ResendMailer = Depends(get_mailer),
    newsletter: MailerLite = Depends(get_newsletter),
):
    email = _text(payload, "email")
    pattern_id = _text(payload, "pattern_id")
    if not email or not pattern_id:
        raise HTTPException(400, detail="Email and pattern ID are required")
    if not is_valid_email(email):
        raise HTTPException(400, detail="Invalid email address")
    email = normalize_email(email)

    pattern = await catalog.get_pattern_by_id(db, pattern_id)
    if pattern is None:
        raise HTTPException(404, detail="Pattern not found")
    pattern_name = pattern.name

    if await library.find_free_download(db, email, pattern_id):
        raise HTTPException(
            400,
            detail="You have already downloaded this free pattern. "
                   "Check your email!",
        )

    if await newsletter_rows.get_subscription(db, email) is None:
        try:
            await newsletter_rows.subscribe(db, email, "free_download")
        except SQLAlchemyError as e:
            # newsletter signup never blocks the download
            log_error("Free download newsletter subscription", e)
            await db.rollback()

    synced = await newsletter.add_subscriber(email, "free_download")
    if not synced["success"]:
        logger.error("mailerlite.sync_failed", error=synced.get("error"))

    token = library.new_download_token()
    try:
        await library.grant_download(
            db, email=email, pattern_id=pattern_id, is_free=True,
            download_token=token,
        )
        await db.commit()
    except SQLAlchemyError as e:
        log_error("Free download record", e)
        await db.rollback()
        raise HTTPException(500, detail="Failed to create download record")

    download_url = f"{APP_URL}/api/free-download/{token}"
    try:
        await mailer.send_free_download(email, pattern_name, download_url)
    except MailError as e:
        log_error("Free download email", e)

    return {
        "success": True,
        "message": "Free pattern download initiated! Check your email for "
                   "the download link.",
    }


@app.get("/api/free-download/{token}")
async def free_download_file(
    token: str,
    db: AsyncSession = Depends(get_db),
    storage: SupabaseStorage = Depends(get_storage),
):
    download = await library.get_free_download_by_token(db, token)
    if download is None:
        raise HTTPException(404, detail="Download link not found or expired")

    pattern = await catalog.get_pattern_by_id(db, download.pattern_id,
                                              active_only=False)
    if pattern is None or not pattern.free_image_url:
        raise HTTPException(404, detail="Pattern file not found")
    slug = pattern.slug

    _, sep, file_name = pattern.free_image_url.partition(
        f"/{PREVIEW_BUCKET}/"
    )
    if not sep or not file_name:
        raise HTTPException(500, detail="Invalid pattern file URL")

    try:
        data = await storage.download(PREVIEW_BUCKET, file_name)
    except StorageError as e:
        log_error("Free download file", e)
        raise HTTPException(500, detail="Failed to download pattern file")

    await library.record_download(db, download)
    await db.commit()

    return Response(
        content=data,
        media_type="image/png",
        headers={
            "Content-Disposition": f'attachment; filename="{slug}.png"',
            "Cache-Control": "private, max-age=3600",
        },
    )


# ----------------------------
# Premium downloads (paid or bought with credits)
# ----------------------------
@app.get("/api/download/{pattern_id}")
async def premium_download(
    pattern_id: str,
    user: User = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    storage: SupabaseStorage = Depends(get_storage),
):
    download = await library.find_paid_download(
        db, pattern_id, email=user.email, user_id=user.id
    )
    if download is None:
        raise HTTPException(403,
                            detail="You do not have access to this pattern")

    pattern = await catalog.get_pattern_by_id(db, pattern_id,
                                              active_only=False)
    file_name = f"{pattern.name if pattern else 'pattern'}.png"

    try:
        url = await storage.create_signed_url(
            PREMIUM_BUCKET, f"premium/{file_name}", SIGNED_URL_TTL_SECONDS
        )
    except StorageError as e:
        log_error("Premium download signed URL", e)
        raise HTTPException(500, detail="Failed to generate download link")

    await library.record_download(db, download)
    await db.commit()
    return {"url": url, "file_name": file_name}


# ----------------------------
# Favorites
# ----------------------------
@app.post("/api/favorites")
async def toggle_favorite(
    payload: dict,
    user: User = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    pattern_id = _text(payload, "pattern_id")
    if not pattern_id:
        raise HTTPException(400, detail="Pattern ID is required")
    is_favorited = await library.toggle_favorite(db, user.email, pattern_id)
    await db.commit()
    return {"is_favorited": is_favorited}


@app.get("/api/favorites")
async def list_favorites(
    user: User = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    patterns = await library.list_favorite_patterns(db, user.email)
    return {"items": [catalog.pattern_to_dict(p) for p in patterns]}


# ----------------------------
# Newsletter
# ----------------------------
@app.post("/api/newsletter/subscribe")
async def newsletter_subscribe(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    newsletter: MailerLite = Depends(get_newsletter),
):
    email = _text(payload, "email")
    if not email:
        raise HTTPException(400, detail="Email is required")
    if not is_valid_email(email):
        raise HTTPException(400, detail="Invalid email address")
    email = normalize_email(email)

    if await newsletter_rows.get_subscription(db, email) is not None:
        raise HTTPException(400, detail="This email is already subscribed")

    try:
        await newsletter_rows.subscribe(db, email, "homepage")
        await db.commit()
    except SQLAlchemyError as e:
        log_error("Newsletter subscription", e)
        await db.rollback()
        raise HTTPException(500, detail="Failed to subscribe")

    synced = await newsletter.add_subscriber(email, "homepage")
    if not synced["success"]:
        logger.error("mailerlite.sync_failed", error=synced.get("error"))

    return {"success": True,
            "message": "Successfully subscribed to newsletter"}


# ----------------------------
# Subscriptions
# ----------------------------
def _price_for_plan(plan_type: str) -> str:
    if plan_type == "monthly":
        return config.STRIPE_MONTHLY_PRICE_ID
    return config.STRIPE_YEARLY_PRICE_ID


@app.post("/api/subscriptions/create")
async def create_subscription(
    payload: dict,
    user: User = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    payments: PaymentAdapter = Depends(get_payments),
):
    plan_type = payload.get("plan_type")
    if plan_type not in ("monthly", "yearly"):
        raise HTTPException(
            400, detail='Invalid plan type. Must be "monthly" or "yearly"'
        )

    if await accounts.get_active_subscription(db, user.id) is not None:
        raise HTTPException(400,
                            detail="You already have an active subscription")

    price_id = _price_for_plan(plan_type)
    if not price_id:
        raise HTTPException(
            500,
            detail="Subscription plan not configured. Please contact "
                   "support.",
        )

    try:
        customer_id = user.stripe_customer_id
        if not customer_id:
            customer_id = await payments.create_customer(
                user.email, user.name, user.id
            )
            await accounts.set_stripe_customer_id(db, user, customer_id)
            await db.commit()
        session = await payments.create_subscription_checkout(
            customer_id, price_id, user.id, plan_type
        )
    except PaymentError as e:
        log_error("Subscription creation", e)
        raise HTTPException(500, detail=public_error_message(e))
    return session


@app.post("/api/subscriptions/portal")
async def subscription_portal(
    user: User = Depends(current_user),
    payments: PaymentAdapter = Depends(get_payments),
):
    if not user.stripe_customer_id:
        raise HTTPException(404, detail="No subscription found")
    try:
        url = await payments.create_portal_session(user.stripe_customer_id)
    except PaymentError as e:
        log_error("Portal creation", e)
        raise HTTPException(500, detail=public_error_message(e))
    return {"url": url}


@app.get("/api/subscriptions/status")
async def subscription_status(
    user: User = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    user_id = user.id
    subscription = await accounts.get_active_subscription(
        db, user_id, accounts.VISIBLE_STATUSES
    )
    subscription_info = (
        accounts.subscription_to_dict(subscription) if subscription else None
    )
    available = await credits.get_available_credits(db, user_id)
    transactions = await credits.get_credit_transactions(db, user_id, 10)
    expiring = await credits.get_expiring_credits(db, user_id)
    return {
        "subscription": subscription_info,
        "available_credits": available,
        "transactions": [credits.transaction_to_dict(t)
                         for t in transactions],
        "expiring_credits": expiring,
    }


# ----------------------------
# Cron: expire credits older than 90 days
# ----------------------------
@app.api_route("/api/cron/expire-credits", methods=["GET", "POST"])
async def cron_expire_credits(
    request: Request, db: AsyncSession = Depends(get_db)
):
    secret = config.CRON_SECRET
    if secret and not ct_equal(request.headers.get("authorization", ""),
                               f"Bearer {secret}"):
        raise HTTPException(401, detail="Unauthorized")

    logger.info("cron.expire_credits.start")
    try:
        result = await credits.expire_old_credits(db)
        await db.commit()
    except SQLAlchemyError as e:
        log_error("Credit expiration cron", e)
        await db.rollback()
        raise HTTPException(500, detail=public_error_message(e))

    return {
        "success": True,
        "message": "Credit expiration completed",
        "expired_count": result["expired_count"],
        "credits_expired": result["credits_expired"],
        "timestamp": to_iso(now_ts()),
    }


# ----------------------------
# Webhook endpoint (Stripe)
# ----------------------------
@app.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentAdapter = Depends(get_payments),
    mailer: ResendMailer = Depends(get_mailer),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = payments.verify_webhook(payload, headers)
    return await webhooks.handle_event(db, event, payments=payments,
                                       mailer=mailer)


# ----------------------------
# Auth (session cookie)
# ----------------------------
@app.post("/api/auth/signup", status_code=201)
async def signup(payload: dict, db: AsyncSession = Depends(get_db)):
    email = _text(payload, "email")
    password = _text(payload, "password", strip=False)
    if not email or not password:
        raise HTTPException(400, detail="Email and password are required")
    if not is_valid_email(email):
        raise HTTPException(400, detail="Invalid email address")
    if len(password) < accounts.MIN_PASSWORD_LENGTH:
        raise HTTPException(
            400, detail="Password must be at least 8 characters"
        )

    if await accounts.get_user_by_email(db, email) is not None:
        raise HTTPException(
            400, detail="An account with this email already exists"
        )

    password_hash = await run_in_threadpool(accounts.hash_password, password)
    try:
        user = await accounts.create_user(db, email, password_hash)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            400, detail="An account with this email already exists"
        )
    logger.info("user.created", user_id=user.id, source="signup")
    return {"success": True, "user": {"id": user.id, "email": user.email}}


@app.post("/api/auth/login")
async def login(
    payload: dict, request: Request, db: AsyncSession = Depends(get_db)
):
    email = _text(payload, "email")
    password = _text(payload, "password", strip=False)
    user = await accounts.get_user_by_email(db, email) if email else None
    ok = user is not None and await run_in_threadpool(
        accounts.check_password, password, user.password_hash
    )
    if not ok:
        raise HTTPException(401, detail="Invalid credentials.")
    request.session["user_id"] = user.id
    return {"success": True, "user": accounts.user_to_dict(user)}


@app.post("/api/auth/logout")
async def logout(request: Request):
    request.session.clear()
    return {"success": True}


# ----------------------------
# Account
# ----------------------------
@app.get("/api/account/orders")
async def account_orders(
    user: User = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    items = await orders.list_orders(db, email=user.email, user_id=user.id)
    return {"items": items}


@app.get("/api/account/downloads")
async def account_downloads(
    user: User = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    items = await library.list_downloads(db, user.email, user_id=user.id)
    return {"items": items}


# ----------------------------
# Admin JSON feeds
# ----------------------------
@app.get("/api/admin/orders")
async def api_admin_orders(
    limit: int = 200,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    limit = _clamp(limit)
    items = await orders.list_orders(db, limit=limit)
    return {"items": items, "limit": limit}


@app.get("/api/admin/users")
async def api_admin_users(
    limit: int = 200,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    limit = _clamp(limit)
    users = await accounts.list_users(db, limit=limit)
    return {"items": [accounts.user_to_dict(u) for u in users],
            "limit": limit}
