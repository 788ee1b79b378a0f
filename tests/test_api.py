import pytest
from fastapi.responses import ORJSONResponse
from sqlalchemy import select

from patternpioneer import config, server
from patternpioneer.helpers import DAY_SECONDS, now_ts
from patternpioneer.model import (
    CreditTransaction, Download, NewsletterSubscription, User,
)
from patternpioneer.model import credits
from patternpioneer.model.credits import TX_SUBSCRIPTION_RENEWAL
from tests.factories import make_pattern, make_subscription, make_user

pytestmark = [pytest.mark.asyncio]


# =============================================================================
# CATALOG + CHECKOUT
# =============================================================================


class TestCatalog:
    async def test_lists_only_active_patterns(self, async_client, db):
        await make_pattern(db, "Blue Waves")
        await make_pattern(db, "Retired", is_active=False)

        r = await async_client.get("/api/patterns")
        assert r.status_code == 200
        names = [p["name"] for p in r.json()["items"]]
        assert names == ["Blue Waves"]

    async def test_pattern_by_slug(self, async_client, db):
        await make_pattern(db, "Blue Waves", price=899)

        r = await async_client.get("/api/patterns/blue-waves")
        assert r.status_code == 200
        assert r.json()["price"] == 899

        r = await async_client.get("/api/patterns/nope")
        assert r.status_code == 404

    async def test_responses_are_rendered_with_orjson(self, async_client, db):
        assert server.app.router.default_response_class is ORJSONResponse

        await make_pattern(db, "Blå Bølger", slug="bla-bolger")
        r = await async_client.get("/api/patterns")
        assert r.headers["content-type"] == "application/json"
        assert "Blå Bølger".encode() in r.content


class TestCheckout:
    async def test_creates_stripe_session_from_db_prices(
        self, async_client, db, payments
    ):
        a = await make_pattern(db, "Blue Waves", price=699)
        b = await make_pattern(db, "Red Dots", price=899)

        r = await async_client.post("/api/checkout", json={
            "items": [a.id, b.id, a.id],
            "email": "Guest@Example.com",
        })
        assert r.status_code == 200
        assert r.json()["session_id"] == "cs_test_1"

        sent = payments.checkouts[0]
        assert sent["pattern_ids"] == [a.id, b.id]
        assert [line["unit_amount"] for line in sent["lines"]] == [699, 899]
        assert sent["customer_email"] == "guest@example.com"

    async def test_empty_cart(self, async_client, db):
        r = await async_client.post("/api/checkout", json={"items": []})
        assert r.status_code == 400

    async def test_unknown_pattern(self, async_client, db):
        r = await async_client.post("/api/checkout",
                                    json={"items": ["missing"]})
        assert r.status_code == 400
        assert "missing" in r.json()["detail"]


# =============================================================================
# CREDITS
# =============================================================================


class TestPurchaseWithCredit:
    async def _subscriber(self, db, credits_amount=12):
        user = await make_user(db)
        await make_subscription(db, user)
        if credits_amount:
            await credits.add_credits(db, user.id, credits_amount,
                                      TX_SUBSCRIPTION_RENEWAL)
            await db.commit()
        return user

    async def test_requires_login(self, async_client, db):
        r = await async_client.post("/api/patterns/purchase-with-credit",
                                    json={"pattern_id": "x"})
        assert r.status_code == 401

    async def test_spends_one_credit_and_grants_access(
        self, async_client, db, new_session, login_as
    ):
        user = await self._subscriber(db)
        pattern = await make_pattern(db)
        login_as(user.id)

        r = await async_client.post("/api/patterns/purchase-with-credit",
                                    json={"pattern_id": pattern.id})
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["remaining_credits"] == 11
        assert body["download"]["pattern_id"] == pattern.id

        async with new_session() as s:
            debit = (await s.execute(
                select(CreditTransaction)
                .where(CreditTransaction.amount < 0)
            )).scalars().one()
            assert debit.pattern_id == pattern.id
            assert debit.description == 'Purchased "Blue Waves" with 1 credit'
            assert await credits.get_available_credits(s, user.id) == 11

        again = await async_client.post("/api/patterns/purchase-with-credit",
                                        json={"pattern_id": pattern.id})
        assert again.status_code == 400
        assert again.json()["detail"] == \
            "You already have access to this pattern"

    async def test_requires_active_subscription(
        self, async_client, db, login_as
    ):
        user = await make_user(db)
        await make_subscription(db, user, status="canceled")
        pattern = await make_pattern(db)
        login_as(user.id)

        r = await async_client.post("/api/patterns/purchase-with-credit",
                                    json={"pattern_id": pattern.id})
        assert r.status_code == 403

    async def test_insufficient_credits(self, async_client, db, login_as):
        user = await self._subscriber(db, credits_amount=0)
        pattern = await make_pattern(db)
        login_as(user.id)

        r = await async_client.post("/api/patterns/purchase-with-credit",
                                    json={"pattern_id": pattern.id})
        assert r.status_code == 400
        assert r.json()["detail"].startswith("Insufficient credits")

    async def test_unknown_pattern(self, async_client, db, login_as):
        user = await self._subscriber(db)
        login_as(user.id)

        r = await async_client.post("/api/patterns/purchase-with-credit",
                                    json={"pattern_id": "missing"})
        assert r.status_code == 404


class TestCronExpireCredits:
    async def test_requires_bearer_secret(
        self, async_client, db, monkeypatch
    ):
        monkeypatch.setattr(config, "CRON_SECRET", "s3cret")

        r = await async_client.post("/api/cron/expire-credits")
        assert r.status_code == 401
        r = await async_client.get(
            "/api/cron/expire-credits",
            headers={"Authorization": "Bearer wrong"},
        )
        assert r.status_code == 401

    async def test_sweeps_lapsed_grants(self, async_client, db, monkeypatch):
        monkeypatch.setattr(config, "CRON_SECRET", "s3cret")
        user = await make_user(db)
        await credits.add_credits(db, user.id, 12, TX_SUBSCRIPTION_RENEWAL,
                                  now=now_ts() - 100 * DAY_SECONDS)
        await db.commit()

        r = await async_client.get(
            "/api/cron/expire-credits",
            headers={"Authorization": "Bearer s3cret"},
        )
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["expired_count"] == 1
        assert body["credits_expired"] == 12
        assert body["timestamp"]


# =============================================================================
# DOWNLOADS
# =============================================================================


class TestFreeDownload:
    async def test_full_flow(
        self, async_client, db, new_session, mailer, newsletter, storage
    ):
        pattern = await make_pattern(
            db, "Blue Waves",
            free_image_url=(
                "https://x.supabase.co/storage/v1/object/public/"
                "pattern-previews/blue-waves.png"
            ),
        )
        storage.files["pattern-previews/blue-waves.png"] = b"PNGDATA"

        r = await async_client.post("/api/patterns/free-download", json={
            "email": " Fan@Example.com ", "pattern_id": pattern.id,
        })
        assert r.status_code == 200
        assert r.json()["success"] is True

        assert newsletter.subscribed == [("fan@example.com", "free_download")]
        sent = mailer.sent[0]
        assert sent["to"] == "fan@example.com"
        assert sent["pattern_name"] == "Blue Waves"
        prefix = "http://shop.test/api/free-download/"
        assert sent["download_url"].startswith(prefix)
        token = sent["download_url"][len(prefix):]

        async with new_session() as s:
            d = (await s.execute(select(Download))).scalars().one()
            assert d.is_free is True
            assert d.download_token == token
            assert (await s.execute(
                select(NewsletterSubscription))).scalars().one().source == \
                "free_download"

        r = await async_client.get(f"/api/free-download/{token}")
        assert r.status_code == 200
        assert r.content == b"PNGDATA"
        assert r.headers["content-type"] == "image/png"
        assert r.headers["content-disposition"] == \
            'attachment; filename="blue-waves.png"'

        r = await async_client.post("/api/patterns/free-download", json={
            "email": "fan@example.com", "pattern_id": pattern.id,
        })
        assert r.status_code == 400

    async def test_validation(self, async_client, db):
        r = await async_client.post("/api/patterns/free-download",
                                    json={"email": "fan@example.com"})
        assert r.status_code == 400
        r = await async_client.post("/api/patterns/free-download",
                                    json={"email": "nope", "pattern_id": "x"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Invalid email address"
        r = await async_client.post("/api/patterns/free-download", json={
            "email": "fan@example.com", "pattern_id": "missing"})
        assert r.status_code == 404

    async def test_unknown_token(self, async_client, db):
        r = await async_client.get("/api/free-download/bogus")
        assert r.status_code == 404

    async def test_pattern_without_free_file(self, async_client, db, storage):
        pattern = await make_pattern(db)
        db.add(Download(email="fan@example.com", pattern_id=pattern.id,
                        is_free=True, download_token="tok1"))
        await db.commit()

        r = await async_client.get("/api/free-download/tok1")
        assert r.status_code == 404
        assert r.json()["detail"] == "Pattern file not found"

    async def test_free_file_outside_preview_bucket(
        self, async_client, db, storage
    ):
        pattern = await make_pattern(
            db, free_image_url="https://cdn.test/other/blue-waves.png")
        db.add(Download(email="fan@example.com", pattern_id=pattern.id,
                        is_free=True, download_token="tok2"))
        await db.commit()

        r = await async_client.get("/api/free-download/tok2")
        assert r.status_code == 500
        assert r.json()["detail"] == "Invalid pattern file URL"

    async def test_non_string_fields_are_rejected(self, async_client, db):
        pattern = await make_pattern(db)

        r = await async_client.post("/api/patterns/free-download", json={
            "email": ["fan@example.com"], "pattern_id": pattern.id})
        assert r.status_code == 400
        assert r.json()["detail"] == "Field 'email' must be a string"

        r = await async_client.post("/api/patterns/free-download", json={
            "email": "fan@example.com", "pattern_id": 42})
        assert r.status_code == 400
        assert r.json()["detail"] == "Field 'pattern_id' must be a string"

    async def test_email_failure_does_not_fail_request(
        self, async_client, db, mailer
    ):
        pattern = await make_pattern(db)
        mailer.fail = True

        r = await async_client.post("/api/patterns/free-download", json={
            "email": "fan@example.com", "pattern_id": pattern.id,
        })
        assert r.status_code == 200


class TestPremiumDownload:
    async def test_signs_url_for_owner(
        self, async_client, db, storage, login_as
    ):
        user = await make_user(db)
        pattern = await make_pattern(db, "Blue Waves")
        db.add(Download(email=user.email, user_id=user.id,
                        pattern_id=pattern.id))
        await db.commit()
        login_as(user.id)

        r = await async_client.get(f"/api/download/{pattern.id}")
        assert r.status_code == 200
        assert r.json()["file_name"] == "Blue Waves.png"
        assert storage.signed == ["patterns/premium/Blue Waves.png"]

    async def test_free_download_does_not_unlock_premium(
        self, async_client, db, login_as
    ):
        user = await make_user(db)
        pattern = await make_pattern(db)
        db.add(Download(email=user.email, pattern_id=pattern.id,
                        is_free=True, download_token="t"))
        await db.commit()
        login_as(user.id)

        r = await async_client.get(f"/api/download/{pattern.id}")
        assert r.status_code == 403


# =============================================================================
# FAVORITES + NEWSLETTER
# =============================================================================


class TestFavorites:
    async def test_toggle_and_list(self, async_client, db, login_as):
        user = await make_user(db)
        pattern = await make_pattern(db)
        login_as(user.id)

        r = await async_client.post("/api/favorites",
                                    json={"pattern_id": pattern.id})
        assert r.json() == {"is_favorited": True}
        r = await async_client.get("/api/favorites")
        assert [p["id"] for p in r.json()["items"]] == [pattern.id]

        r = await async_client.post("/api/favorites",
                                    json={"pattern_id": pattern.id})
        assert r.json() == {"is_favorited": False}
        r = await async_client.get("/api/favorites")
        assert r.json()["items"] == []


class TestNewsletter:
    async def test_subscribe_once(self, async_client, db, newsletter):
        r = await async_client.post("/api/newsletter/subscribe",
                                    json={"email": "Reader@Example.com"})
        assert r.status_code == 200
        assert newsletter.subscribed == [("reader@example.com", "homepage")]

        r = await async_client.post("/api/newsletter/subscribe",
                                    json={"email": "reader@example.com"})
        assert r.status_code == 400
        assert r.json()["detail"] == "This email is already subscribed"

    async def test_validation(self, async_client, db):
        r = await async_client.post("/api/newsletter/subscribe", json={})
        assert r.status_code == 400
        r = await async_client.post("/api/newsletter/subscribe",
                                    json={"email": "not-an-email"})
        assert r.status_code == 400
        r = await async_client.post("/api/newsletter/subscribe",
                                    json={"email": 123})
        assert r.status_code == 400
        assert r.json()["detail"] == "Field 'email' must be a string"


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================


class TestSubscriptions:
    async def test_create_makes_customer_once(
        self, async_client, db, new_session, payments, login_as,
        monkeypatch,
    ):
        monkeypatch.setattr(config, "STRIPE_MONTHLY_PRICE_ID", "price_m")
        user = await make_user(db)
        login_as(user.id)

        r = await async_client.post("/api/subscriptions/create",
                                    json={"plan_type": "monthly"})
        assert r.status_code == 200
        assert r.json()["url"] == "https://checkout.stripe.test/cs_sub_1"
        assert payments.subscription_checkouts == [{
            "customer_id": "cus_new", "price_id": "price_m",
            "plan_type": "monthly",
        }]

        async with new_session() as s:
            assert (await s.get(User, user.id)).stripe_customer_id == \
                "cus_new"

        await async_client.post("/api/subscriptions/create",
                                json={"plan_type": "monthly"})
        assert len(payments.customers) == 1

    async def test_create_rejects_bad_plan_and_existing_subscription(
        self, async_client, db, login_as, monkeypatch
    ):
        monkeypatch.setattr(config, "STRIPE_YEARLY_PRICE_ID", "price_y")
        user = await make_user(db, stripe_customer_id="cus_1")
        login_as(user.id)

        r = await async_client.post("/api/subscriptions/create",
                                    json={"plan_type": "weekly"})
        assert r.status_code == 400

        await make_subscription(db, user, status="trialing")
        r = await async_client.post("/api/subscriptions/create",
                                    json={"plan_type": "yearly"})
        assert r.status_code == 400
        assert r.json()["detail"] == "You already have an active subscription"

    async def test_create_without_configured_price(
        self, async_client, db, login_as, monkeypatch
    ):
        monkeypatch.setattr(config, "STRIPE_MONTHLY_PRICE_ID", "")
        user = await make_user(db)
        login_as(user.id)

        r = await async_client.post("/api/subscriptions/create",
                                    json={"plan_type": "monthly"})
        assert r.status_code == 500

    async def test_portal(self, async_client, db, login_as):
        user = await make_user(db)
        login_as(user.id)
        r = await async_client.post("/api/subscriptions/portal")
        assert r.status_code == 404

        other = await make_user(db, "sub@example.com",
                                stripe_customer_id="cus_9")
        login_as(other.id)
        r = await async_client.post("/api/subscriptions/portal")
        assert r.status_code == 200
        assert r.json()["url"] == "https://billing.stripe.test/cus_9"

    async def test_status(self, async_client, db, login_as):
        user = await make_user(db, stripe_customer_id="cus_1")
        await make_subscription(db, user, status="past_due",
                                plan_type="yearly")
        await credits.add_credits(db, user.id, 12, TX_SUBSCRIPTION_RENEWAL,
                                  now=now_ts() - 85 * DAY_SECONDS)
        await db.commit()
        login_as(user.id)

        r = await async_client.get("/api/subscriptions/status")
        assert r.status_code == 200
        body = r.json()
        assert body["subscription"]["status"] == "past_due"
        assert body["subscription"]["plan_type"] == "yearly"
        assert body["available_credits"] == 12
        assert len(body["transactions"]) == 1
        assert body["expiring_credits"][0]["amount"] == 12


# =============================================================================
# AUTH + ACCOUNT + ADMIN
# =============================================================================


class TestAuth:
    async def test_signup_login_logout(self, async_client, db):
        r = await async_client.post("/api/auth/signup", json={
            "email": "New@Example.com", "password": "hunter2hunter2",
        })
        assert r.status_code == 201
        assert r.json()["user"]["email"] == "new@example.com"

        r = await async_client.post("/api/auth/signup", json={
            "email": "new@example.com", "password": "hunter2hunter2",
        })
        assert r.status_code == 400

        r = await async_client.post("/api/auth/login", json={
            "email": "new@example.com", "password": "wrong-password",
        })
        assert r.status_code == 401

        r = await async_client.post("/api/auth/login", json={
            "email": "new@example.com", "password": "hunter2hunter2",
        })
        assert r.status_code == 200
        r = await async_client.get("/api/account/orders")
        assert r.status_code == 200

        await async_client.post("/api/auth/logout")
        r = await async_client.get("/api/account/orders")
        assert r.status_code == 401

    async def test_signup_validation(self, async_client, db):
        r = await async_client.post("/api/auth/signup", json={
            "email": "a@example.com", "password": "short"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Password must be at least 8 characters"
        r = await async_client.post("/api/auth/signup",
                                    json={"email": "a@example.com"})
        assert r.status_code == 400
        r = await async_client.post("/api/auth/signup", json={
            "email": {"a": 1}, "password": "hunter2hunter2"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Field 'email' must be a string"
        r = await async_client.post("/api/auth/login", json={
            "email": "a@example.com", "password": 12345678})
        assert r.status_code == 400
        assert r.json()["detail"] == "Field 'password' must be a string"


class TestAccount:
    async def test_downloads_include_pattern_names(
        self, async_client, db, login_as
    ):
        user = await make_user(db)
        pattern = await make_pattern(db, "Blue Waves")
        db.add(Download(email=user.email, pattern_id=pattern.id))
        await db.commit()
        login_as(user.id)

        r = await async_client.get("/api/account/downloads")
        items = r.json()["items"]
        assert [i["pattern_name"] for i in items] == ["Blue Waves"]


class TestAdmin:
    async def test_requires_admin(self, async_client, db, login_as):
        user = await make_user(db)
        login_as(user.id)
        r = await async_client.get("/api/admin/users")
        assert r.status_code == 403

    async def test_lists_users_with_clamped_limit(
        self, async_client, db, login_as
    ):
        admin = await make_user(db, "admin@example.com", is_admin=True)
        await make_user(db, "b@example.com")
        login_as(admin.id)

        r = await async_client.get("/api/admin/users?limit=0")
        assert r.status_code == 200
        assert len(r.json()["items"]) == 1

        r = await async_client.get("/api/admin/orders")
        assert r.status_code == 200
        assert r.json()["items"] == []
