"""HTTP contract: envelopes, auth, error codes and quota headers."""

import pytest
from sqlalchemy import update

from persona.core.auth import issue_token
from persona.core.database import get_db_session, api_usage_monthly
from persona.features.payments.provider import expected_signature, get_payment_provider
from persona.features.quota.service import month_key, utcnow


def _bearer(user_id, role="user"):
    return {"Authorization": f"Bearer {issue_token(user_id, role)}"}


class TestHealth:
    def test_healthz(self, client):
        assert client.get("/healthz").json() == {"status": "ok"}

    def test_readyz(self, client):
        response = client.get("/readyz")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"x-request-id": "trace-abc.123"})
        assert response.headers["x-request-id"] == "trace-abc.123"

    def test_unsafe_request_id_is_replaced(self, client):
        response = client.get("/healthz", headers={"x-request-id": "bad id <script>"})
        rid = response.headers["x-request-id"]
        assert rid != "bad id <script>"
        assert len(rid) == 36


class TestEngagementRoutes:
    def test_like_roundtrip(self, client, seed_entity, user_headers):
        seed_entity("outfits", "look")

        liked = client.post("/v1/outfits/look/interact", json={"action": "like"}, headers=user_headers("u1"))
        again = client.post("/v1/outfits/look/interact", json={"action": "like"}, headers=user_headers("u1"))

        assert liked.status_code == 200
        assert liked.json() == {"success": True, "liked": True, "count": 1}
        assert again.json()["count"] == 1

        status = client.get("/v1/outfits/look/status", headers=user_headers("u1")).json()
        assert status["likes"] == 1
        assert status["liked"] is True
        assert status["entityType"] == "outfits"

    def test_interact_requires_identity(self, client, seed_entity):
        seed_entity("outfits", "look")
        response = client.post("/v1/outfits/look/interact", json={"action": "like"})

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "unauthorized"
        assert response.headers["x-request-id"] == body["error"]["request_id"]

    def test_unknown_action(self, client, seed_entity, user_headers):
        seed_entity("outfits", "look")
        response = client.post("/v1/outfits/look/interact", json={"action": "poke"}, headers=user_headers("u1"))

        assert response.status_code == 400
        assert response.json()["error"]["field"] == "action"

    def test_unknown_entity_is_404(self, client, user_headers):
        response = client.post("/v1/movies/ghost/interact", json={"action": "like"}, headers=user_headers("u1"))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_comment_and_delete_by_other_user(self, client, seed_entity, seed_user, user_headers):
        seed_entity("reviews", "barbie-2023-review")
        seed_user("u1", name="Ana")

        commented = client.post(
            "/v1/reviews/barbie-2023-review/interact",
            json={"action": "comment", "text": "  Stunning costumes  "},
            headers=user_headers("u1"),
        ).json()
        assert commented["count"] == 1
        created = commented["comment"]
        assert created["text"] == "Stunning costumes"
        assert created["userName"] == "Ana"

        forbidden = client.post(
            "/v1/reviews/barbie-2023-review/interact",
            json={"action": "delete-comment", "commentId": created["id"]},
            headers=user_headers("u2"),
        )
        assert forbidden.status_code == 403

        deleted = client.post(
            "/v1/reviews/barbie-2023-review/interact",
            json={"action": "delete-comment", "commentId": created["id"]},
            headers=user_headers("u1"),
        )
        assert deleted.json() == {"success": True, "deleted": True, "commentsCount": 0}

    def test_news_article_interactions(self, client, seed_entity, user_headers):
        seed_entity("news", "news-1", slug="cannes-red-carpet")
        path = "/v1/news/cannes-red-carpet/interact"

        client.post(path, json={"action": "comment", "text": "first"}, headers=user_headers("u1"))
        second = client.post(path, json={"action": "comment", "text": "second"}, headers=user_headers("u2")).json()
        liked = client.post(path, json={"action": "like"}, headers=user_headers("u1")).json()

        assert second["count"] == 2
        assert liked == {"success": True, "liked": True, "count": 1}
        missing = client.post("/v1/news/ghost/interact", json={"action": "like"}, headers=user_headers("u1"))
        assert missing.status_code == 404

    def test_follow_routes(self, client, seed_entity, user_headers):
        seed_entity("celebrities", "zendaya")

        client.post("/v1/celebrities/zendaya/follow", headers=user_headers("u1"))
        following = client.get("/v1/me/following", headers=user_headers("u1")).json()
        assert following["celebrityIds"] == ["zendaya"]

        toggled = client.post(
            "/v1/celebrities/follow/toggle", json={"celebrityId": "zendaya"}, headers=user_headers("u1")
        ).json()
        assert toggled["following"] is False

    def test_saved_listing(self, client, seed_entity, user_headers):
        seed_entity("outfits", "look")
        client.post("/v1/outfits/look/interact", json={"action": "save"}, headers=user_headers("u1"))

        saved = client.get("/v1/me/saved/outfits", headers=user_headers("u1")).json()

        assert saved["entityIds"] == ["look"]

    def test_banned_user_is_forbidden(self, client, seed_entity, seed_user, user_headers):
        seed_entity("outfits", "look")
        seed_user("spammer", status="banned")

        response = client.post("/v1/outfits/look/interact", json={"action": "like"}, headers=user_headers("spammer"))

        assert response.status_code == 403


class TestReviewRoutes:
    def test_submit_list_and_my_review(self, client, seed_entity, user_headers):
        seed_entity("reviews", "review-1", slug="barbie-2023-review")
        path = "/v1/reviews/barbie-2023-review/user-reviews"

        client.post(path, json={"rating": 9, "body": "Loved the visuals and soundtrack."}, headers=user_headers("u1"))
        client.post(path, json={"rating": 7, "body": "On reflection, it was merely good."}, headers=user_headers("u1"))

        listing = client.get(path, headers=user_headers("u1")).json()
        assert listing["avgRating"] == 7.0
        assert listing["pagination"]["total"] == 1
        assert listing["myReview"]["rating"] == 7

        anonymous = client.get(path).json()
        assert anonymous["myReview"] is None

    def test_invalid_rating_is_400(self, client, seed_entity, user_headers):
        seed_entity("reviews", "review-1", slug="barbie-2023-review")
        response = client.post(
            "/v1/reviews/barbie-2023-review/user-reviews",
            json={"rating": 11, "body": "Loved the visuals and soundtrack."},
            headers=user_headers("u1"),
        )
        assert response.status_code == 400
        assert response.json()["error"]["field"] == "rating"


class TestApiKeyRoutes:
    def test_generate_then_conflict(self, client):
        first = client.post("/v1/apikey/generate", headers=_bearer("u1"))
        second = client.post("/v1/apikey/generate", headers=_bearer("u1"))

        assert first.status_code == 201
        assert first.json()["apiKey"].startswith("cp_live_")
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "conflict"

    def test_revoke_returns_replacement_key(self, client):
        first = client.post("/v1/apikey/generate", headers=_bearer("u1")).json()

        revoked = client.post("/v1/apikey/revoke", headers=_bearer("u1"))

        assert revoked.status_code == 200
        body = revoked.json()
        assert body["keyId"] == first["keyId"]
        assert body["apiKey"] != first["apiKey"]
        assert client.get("/api/v1/movies", headers={"x-api-key": first["apiKey"]}).status_code == 401

    def test_revoke_after_operator_revocation_is_403(self, client, superadmin):
        key_id = client.post("/v1/apikey/generate", headers=_bearer("u1")).json()["keyId"]
        client.patch(f"/v1/superadmin/api-keys/{key_id}", json={"isActive": False}, headers=_bearer("root", "superadmin"))

        response = client.post("/v1/apikey/revoke", headers=_bearer("u1"))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "key_revoked"

    def test_stats_without_key(self, client):
        assert client.get("/v1/apikey/stats", headers=_bearer("u1")).json() == {"success": True, "hasKey": False}

    def test_invalid_token(self, client):
        response = client.get("/v1/apikey/stats", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401

    def test_checkout_with_fake_provider(self, client, fake_provider):
        client.app.dependency_overrides[get_payment_provider] = lambda: fake_provider
        client.post("/v1/apikey/generate", headers=_bearer("u1"))

        created = client.post("/v1/apikey/payment/create-order", json={"planId": "pro"}, headers=_bearer("u1"))
        assert created.status_code == 200
        provider_order_id = created.json()["order"]["id"]

        verified = client.post(
            "/v1/apikey/payment/verify",
            json={
                "razorpayOrderId": provider_order_id,
                "razorpayPaymentId": "pay_1",
                "razorpaySignature": expected_signature(provider_order_id, "pay_1", "rzp_test_secret"),
            },
            headers=_bearer("u1"),
        ).json()
        assert verified["credited"] is True

        stats = client.get("/v1/apikey/stats", headers=_bearer("u1")).json()["stats"]
        assert stats["totalQuota"] == 10000
        assert stats["planId"] == "pro"


class TestPublicApi:
    @pytest.fixture
    def raw_key(self, client, seed_entity):
        seed_entity("movies", "dune", title="Dune")
        return client.post("/v1/apikey/generate", headers=_bearer("u1")).json()["apiKey"]

    def test_metered_listing_carries_quota(self, client, raw_key):
        response = client.get("/api/v1/movies", headers={"x-api-key": raw_key})

        assert response.status_code == 200
        body = response.json()
        assert body["data"][0]["title"] == "Dune"
        assert body["quota"]["used"] == 1
        assert body["quota"]["total"] == 100
        assert response.headers["X-Quota-Remaining"] == "99"

    def test_news_listing_is_metered(self, client, raw_key, seed_entity):
        seed_entity("news", "news-1", slug="oscars-best-dressed", title="Oscars best dressed")

        listing = client.get("/api/v1/news", headers={"x-api-key": raw_key}).json()
        detail = client.get("/api/v1/news/oscars-best-dressed", headers={"x-api-key": raw_key}).json()

        assert listing["data"][0]["title"] == "Oscars best dressed"
        assert detail["data"]["id"] == "news-1"
        assert detail["quota"]["used"] == 2

    def test_missing_key_is_401(self, client):
        response = client.get("/api/v1/movies")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_api_key"

    def test_exhausted_quota_is_429_with_quota_block(self, client, raw_key):
        client.get("/api/v1/movies", headers={"x-api-key": raw_key})
        with get_db_session() as session:
            session.execute(
                update(api_usage_monthly)
                .where(api_usage_monthly.c.month == month_key(utcnow()))
                .values(hits=100)
            )

        response = client.get("/api/v1/movies/dune", headers={"x-api-key": raw_key})

        assert response.status_code == 429
        body = response.json()
        assert body["error"]["code"] == "quota_exceeded"
        assert body["quota"]["used"] == 100
        assert body["quota"]["total"] == 100
        assert "resetsOn" in body["quota"]

    def test_revoked_key_is_403(self, client, raw_key, superadmin):
        key_id = client.get("/v1/apikey/stats", headers=_bearer("u1")).json()["stats"]["keyId"]
        client.patch(f"/v1/superadmin/api-keys/{key_id}", json={"isActive": False}, headers=_bearer("root", "superadmin"))

        response = client.get("/api/v1/movies", headers={"x-api-key": raw_key})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "key_revoked"


class TestSuperadminRoutes:
    def test_requires_superadmin_role(self, client, seed_user):
        seed_user("mod", role="admin")
        response = client.get("/v1/superadmin/payments", headers=_bearer("mod", "admin"))
        assert response.status_code == 403

    def test_manual_credit_route(self, client, superadmin, seed_user, seed_order):
        seed_user("u1")
        client.post("/v1/apikey/generate", headers=_bearer("u1"))
        order_id = seed_order("u1", quota_granted=900)
        admin = _bearer("root", "superadmin")

        first = client.post("/v1/superadmin/payments/manual-credit", json={"orderId": order_id, "note": "ticket 7"}, headers=admin)
        second = client.post("/v1/superadmin/payments/manual-credit", json={"orderId": order_id}, headers=admin)

        assert first.status_code == 200
        assert first.json()["totalQuota"] == 1000
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "already_credited"

        audit = client.get("/v1/superadmin/audit", params={"action": "manual_credit"}, headers=admin).json()
        assert audit["total"] == 1
        assert audit["entries"][0]["note"] == "ticket 7"

    def test_payments_listing(self, client, superadmin, seed_user, seed_order):
        seed_user("u1", name="Ana")
        seed_order("u1", status="paid")

        body = client.get("/v1/superadmin/payments", headers=_bearer("root", "superadmin")).json()

        assert body["summary"]["paid"] == 1
        assert body["summary"]["uncreditedPaid"] == 1
        assert body["data"][0]["userName"] == "Ana"
