"""
Admin API Tests
===============

Webhook log inspection/replay and founder access grants.
"""

import pytest
import pytest_asyncio

from app.models.webhook_log import WebhookLogStatus
from app.services.event_log import WebhookLogStore
from tests.factories import (
    auth_headers,
    create_user,
    load_user,
    log_entries,
    now_utc,
    post_webhook,
    rc_event,
)

LOGS_URL = "/api/v1/admin/webhook-logs"
GRANT_URL = "/api/v1/admin/beta-users/grant-access"


@pytest_asyncio.fixture
async def admin_headers(session_factory) -> dict:
    admin_id = await create_user(session_factory, role="admin")
    return auth_headers(admin_id)


class TestAdminAccess:
    """Only admins get in."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("role", ["free", "premium", "legacy"])
    async def test_non_admin_is_forbidden(self, client, session_factory, role):
        user_id = await create_user(session_factory, role=role)

        response = await client.get(LOGS_URL, headers=auth_headers(user_id))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_anonymous_is_unauthorized(self, client):
        response = await client.get(LOGS_URL)

        assert response.status_code == 401


class TestWebhookLogs:
    """Listing, detail and replay."""

    @pytest.mark.asyncio
    async def test_list_and_filter(self, client, session_factory, admin_headers):
        user_id = await create_user(session_factory)
        await post_webhook(client, rc_event(user_id=user_id))
        await post_webhook(client, rc_event(user_id="bad", event_id="evt-2"))

        everything = (await client.get(LOGS_URL, headers=admin_headers)).json()["data"]
        invalid = (
            await client.get(LOGS_URL, params={"status": "invalid"}, headers=admin_headers)
        ).json()["data"]

        assert [e["eventId"] for e in everything] == ["evt-2", "evt-1"]
        assert [e["eventId"] for e in invalid] == ["evt-2"]
        assert "payload" not in everything[0]

    @pytest.mark.asyncio
    async def test_limit_is_bounded(self, client, admin_headers):
        response = await client.get(LOGS_URL, params={"limit": 1000}, headers=admin_headers)

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_detail_includes_payload(self, client, session_factory, admin_headers):
        user_id = await create_user(session_factory)
        body = rc_event(user_id=user_id)
        await post_webhook(client, body)
        log_id = (await log_entries(session_factory))[0].log_id

        response = await client.get(f"{LOGS_URL}/{log_id}", headers=admin_headers)

        data = response.json()["data"]
        assert data["status"] == "processed"
        assert data["payload"] == body

    @pytest.mark.asyncio
    async def test_detail_not_found(self, client, admin_headers):
        response = await client.get(f"{LOGS_URL}/999", headers=admin_headers)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_replay_processed_entry_conflicts(self, client, session_factory, admin_headers):
        user_id = await create_user(session_factory)
        await post_webhook(client, rc_event(user_id=user_id))
        log_id = (await log_entries(session_factory))[0].log_id

        response = await client.post(f"{LOGS_URL}/{log_id}/replay", headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "WEBHOOK_004"

    @pytest.mark.asyncio
    async def test_replay_failed_entry(self, client, session_factory, admin_headers):
        """A delivery that failed for a missing user succeeds once the user exists."""
        await post_webhook(client, rc_event(user_id=700))
        entry = (await log_entries(session_factory))[0]
        assert entry.status == WebhookLogStatus.FAILED

        await create_user(session_factory, user_id=700)
        response = await client.post(f"{LOGS_URL}/{entry.log_id}/replay", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["message"] == "Webhook processed"
        assert (await load_user(session_factory, 700)).role == "premium"
        replayed = (await log_entries(session_factory))[0]
        assert replayed.status == WebhookLogStatus.PROCESSED
        assert replayed.attempts == 2

    @pytest.mark.asyncio
    async def test_replay_entry_in_flight_conflicts(self, client, session_factory, admin_headers):
        async with session_factory() as session:
            entry = await WebhookLogStore(session).add(
                source="revenuecat",
                event_id="evt-1",
                event_type="INITIAL_PURCHASE",
                payload=rc_event(),
                user_id=42,
            )
            entry.attempts = 1
            entry.claimed_at = now_utc()
            await session.commit()
            log_id = entry.log_id

        response = await client.post(f"{LOGS_URL}/{log_id}/replay", headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["error"]["message"] == f"Webhook log {log_id} is being processed"

    @pytest.mark.asyncio
    async def test_replay_missing_entry(self, client, admin_headers):
        response = await client.post(f"{LOGS_URL}/999/replay", headers=admin_headers)

        assert response.status_code == 404


class TestSubscriptionListing:
    """Accounts with their subscriptions."""

    URL = "/api/v1/admin/subscriptions"

    @pytest.mark.asyncio
    async def test_lists_users_with_and_without_subscription(
        self, client, session_factory, admin_headers
    ):
        subscriber = await create_user(session_factory)
        plain = await create_user(session_factory)
        await post_webhook(client, rc_event(user_id=subscriber))

        response = await client.get(self.URL, headers=admin_headers)

        assert response.status_code == 200
        rows = {row["user"]["userId"]: row for row in response.json()["data"]}
        assert rows[subscriber]["subscription"]["status"] == "active"
        assert rows[subscriber]["user"]["hasPremiumAccess"] is True
        assert rows[plain]["subscription"] is None
        assert rows[plain]["user"]["role"] == "free"

    @pytest.mark.asyncio
    async def test_status_filter_and_paging(self, client, session_factory, admin_headers):
        first = await create_user(session_factory)
        second = await create_user(session_factory)
        await create_user(session_factory)
        await post_webhook(client, rc_event(user_id=first, event_id="evt-a"))
        await post_webhook(client, rc_event(user_id=second, event_id="evt-b"))
        await post_webhook(client, rc_event("CANCELLATION", user_id=second, event_id="evt-c"))

        active = (
            await client.get(self.URL, params={"status": "active"}, headers=admin_headers)
        ).json()["data"]
        page = (
            await client.get(self.URL, params={"limit": 1, "offset": 1}, headers=admin_headers)
        ).json()["data"]

        assert [row["user"]["userId"] for row in active] == [first]
        assert len(page) == 1

    @pytest.mark.asyncio
    async def test_requires_admin(self, client, session_factory):
        user_id = await create_user(session_factory, role="premium")

        response = await client.get(self.URL, headers=auth_headers(user_id))

        assert response.status_code == 403


class TestBetaGrant:
    """Founder access."""

    @pytest.mark.asyncio
    async def test_grant(self, client, session_factory, admin_headers):
        user_id = await create_user(session_factory)

        response = await client.post(GRANT_URL, json={"userId": user_id}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        user = await load_user(session_factory, user_id)
        assert user.is_beta_user is True
        assert user.beta_start_date is not None
        assert user.role == "free"

        status = (
            await client.get("/api/v1/subscription/status", headers=auth_headers(user_id))
        ).json()
        assert status["hasPremiumAccess"] is True

    @pytest.mark.asyncio
    async def test_grant_unknown_user(self, client, admin_headers):
        response = await client.post(GRANT_URL, json={"userId": 4242}, headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "USER_NOT_FOUND"
