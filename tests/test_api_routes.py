"""HTTP tests for the auth, payments, credits and stories routers."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from api.dependencies import (
    get_account_service,
    get_balance_cache,
    get_ledger,
    get_payment_orchestrator,
    get_recovery_service,
    get_story_library,
    get_story_pipeline,
)
from api.db.base import StoryRecord
from api.main import app
from api.services.account_service import AccountService
from api.services.auth_service import AuthService
from api.services.balance_cache import BalanceCache
from api.services.generation_pipeline import StoryGenerationPipeline
from api.services.payment_engine import PaymentOrchestrator
from api.services.rate_limiter import InMemoryRateLimiter
from api.services.recovery_service import RecoveryService
from api.services.story_library import StoryLibrary
from fakes import FakeGenerator, FakeStorage, FakeVerifier, RecordingSleep, captured

STORY_FORM = {
    "storySubject": "A fox learns to share",
    "storyType": "bedtime",
    "ageGroup": "4-6 years",
    "imageStyle": "watercolor",
    "language1": "en",
    "language2": "es",
    "genre": "fable",
}


def auth_headers(user_id="user-1"):
    token = AuthService.create_access_token(user_id, email="reader@example.com", name="Reader")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(session_factory, ledger, sink, fake_sleep):
    verifier = FakeVerifier(captured("4.99"))
    app.dependency_overrides[get_account_service] = lambda: AccountService(session_factory)
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_balance_cache] = lambda: BalanceCache(None)
    app.dependency_overrides[get_payment_orchestrator] = lambda: PaymentOrchestrator(
        ledger=ledger, verifier=verifier, event_sink=sink, sleep=fake_sleep,
    )
    app.dependency_overrides[get_recovery_service] = lambda: RecoveryService(session_factory)
    app.dependency_overrides[get_story_library] = lambda: StoryLibrary(session_factory)
    app.dependency_overrides[get_story_pipeline] = lambda: StoryGenerationPipeline(
        rate_limiter=InMemoryRateLimiter(max_requests=5, window_seconds=60, min_interval_seconds=0),
        accounts=AccountService(session_factory),
        generator=FakeGenerator(),
        storage=FakeStorage(),
        session_factory=session_factory,
        sleep=RecordingSleep(),
    )
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_header(self, client):
        response = await client.get("/api/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["detail"] == "Missing authorization header"

    @pytest.mark.asyncio
    async def test_bad_scheme(self, client):
        response = await client.get("/api/v1/auth/me", headers={"Authorization": "Token abc"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid authorization header format"

    @pytest.mark.asyncio
    async def test_invalid_token(self, client):
        response = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired token"

    @pytest.mark.asyncio
    async def test_first_request_creates_account(self, client, db_state):
        response = await client.get("/api/v1/auth/me", headers=auth_headers("new-user"))

        assert response.status_code == 200
        assert response.json() == {"id": "new-user", "email": "reader@example.com", "name": "Reader", "credits": 3}
        assert await db_state.credits("new-user") == 3

    @pytest.mark.asyncio
    async def test_existing_account_untouched(self, client, seed_user):
        await seed_user("user-1", credits=11)

        response = await client.get("/api/v1/auth/me", headers=auth_headers("user-1"))

        assert response.json()["credits"] == 11


class TestCredits:
    @pytest.mark.asyncio
    async def test_balance(self, client, seed_user):
        await seed_user("user-1", credits=4)

        response = await client.get("/api/v1/credits", headers=auth_headers())

        assert response.status_code == 200
        assert response.json() == {"has_credits": True, "credit_count": 4}

    @pytest.mark.asyncio
    async def test_empty_balance(self, client, seed_user):
        await seed_user("user-1", credits=0)

        response = await client.get("/api/v1/credits", headers=auth_headers())

        assert response.json() == {"has_credits": False, "credit_count": 0}

    @pytest.mark.asyncio
    async def test_requires_auth(self, client):
        assert (await client.get("/api/v1/credits")).status_code == 401


class TestPayments:
    """Payment endpoints over the real ledger and a scripted provider."""

    @pytest.mark.asyncio
    async def test_process(self, client, seed_user, db_state):
        await seed_user("user-1", credits=3)

        response = await client.post(
            "/api/v1/payments/process",
            json={"orderID": "ORDER123", "packageId": 2},
            headers=auth_headers(),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["newBalance"] == 10
        assert await db_state.credits("user-1") == 10

    @pytest.mark.asyncio
    async def test_process_twice_credits_once(self, client, seed_user, db_state):
        await seed_user("user-1", credits=3)
        payload = {"orderID": "ORDER123", "packageId": 2}

        await client.post("/api/v1/payments/process", json=payload, headers=auth_headers())
        response = await client.post("/api/v1/payments/process", json=payload, headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["newBalance"] == 10
        assert await db_state.credits("user-1") == 10
        assert len(await db_state.transactions("ORDER123")) == 1

    @pytest.mark.asyncio
    async def test_process_anonymous(self, client):
        response = await client.post("/api/v1/payments/process", json={"orderID": "ORDER123", "packageId": 2})

        assert response.status_code == 401
        assert response.json()["error"] == "AUTHENTICATION_REQUIRED"

    @pytest.mark.asyncio
    async def test_process_invalid_package(self, client, seed_user):
        await seed_user("user-1", credits=3)

        response = await client.post(
            "/api/v1/payments/process",
            json={"orderID": "ORDER123", "packageId": 99},
            headers=auth_headers(),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PACKAGE"

    @pytest.mark.asyncio
    async def test_process_order_id_too_long(self, client):
        response = await client.post(
            "/api/v1/payments/process",
            json={"orderID": "X" * 101, "packageId": 2},
            headers=auth_headers(),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_verify(self, client, seed_user, db_state):
        await seed_user("user-1", credits=3)

        response = await client.post("/api/v1/payments/verify", json={"orderID": "ORDER123"}, headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["orderID"] == "ORDER123"
        assert await db_state.credits("user-1") == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    async def test_verify_wrong_method(self, client, method):
        response = await client.request(method, "/api/v1/payments/verify")

        assert response.status_code == 405
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_history(self, client, seed_user):
        await seed_user("user-1", credits=3)
        await client.post(
            "/api/v1/payments/process",
            json={"orderID": "ORDER123", "packageId": 2},
            headers=auth_headers(),
        )

        response = await client.get("/api/v1/payments/history", headers=auth_headers())

        transactions = response.json()["transactions"]
        assert len(transactions) == 1
        assert transactions[0]["orderId"] == "ORDER123"
        assert transactions[0]["status"] == "COMPLETED"
        assert transactions[0]["provider"] == "paypal"

    @pytest.mark.asyncio
    async def test_recover_nothing_missing(self, client, seed_user):
        await seed_user("user-1", credits=3)

        response = await client.post("/api/v1/payments/recover", headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["message"] == "No missing credits found"

    @pytest.mark.asyncio
    async def test_packages(self, client):
        response = await client.get("/api/v1/payments/packages", params={"provider": "polar"})

        assert response.status_code == 200
        assert [p["credits"] for p in response.json()["packages"]] == [3, 5, 8, 12]

    @pytest.mark.asyncio
    async def test_packages_unknown_provider(self, client):
        response = await client.get("/api/v1/payments/packages", params={"provider": "stripe"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestStories:
    @pytest.mark.asyncio
    async def test_create(self, client, seed_user, db_state):
        await seed_user("user-1", credits=2)

        response = await client.post("/api/v1/stories", json=STORY_FORM, headers=auth_headers())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["creditsRemaining"] == 1
        assert len(body["story"]["chapters"]) == 5
        assert await db_state.credits("user-1") == 1

    @pytest.mark.asyncio
    async def test_no_credits(self, client, seed_user):
        await seed_user("user-1", credits=0)

        response = await client.post("/api/v1/stories", json=STORY_FORM, headers=auth_headers())

        assert response.status_code == 402
        assert response.json()["code"] == "INSUFFICIENT_CREDITS"

    @pytest.mark.asyncio
    async def test_invalid_form(self, client, seed_user):
        await seed_user("user-1", credits=2)

        response = await client.post(
            "/api/v1/stories", json={**STORY_FORM, "language2": "en"}, headers=auth_headers(),
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_requires_auth(self, client):
        assert (await client.post("/api/v1/stories", json=STORY_FORM)).status_code == 401


async def save_story(session_factory, user_id, subject, created_at):
    async with session_factory() as session:
        session.add(StoryRecord(
            story_id=f"story_{user_id}_{subject}",
            story_subject=subject,
            story_type="bedtime",
            age_group="4-6 years",
            image_style="watercolor",
            language1="en",
            language2="es",
            output={"bookTitle": {"en": subject}},
            cover_image=f"https://storage.example.com/images/{subject}.webp",
            user_id=user_id,
            created_at=created_at,
        ))
        await session.commit()


class TestStoryHistory:
    @pytest.mark.asyncio
    async def test_newest_first_and_own_only(self, client, session_factory):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        await save_story(session_factory, "user-1", "fox", start)
        await save_story(session_factory, "user-1", "owl", start + timedelta(hours=1))
        await save_story(session_factory, "user-2", "cat", start + timedelta(hours=2))

        response = await client.get("/api/v1/stories", headers=auth_headers())

        assert response.status_code == 200
        stories = response.json()["stories"]
        assert [s["storySubject"] for s in stories] == ["owl", "fox"]
        assert stories[0]["storyId"] == "story_user-1_owl"
        assert stories[0]["coverImage"] == "https://storage.example.com/images/owl.webp"
        assert stories[0]["story"] == {"bookTitle": {"en": "owl"}}

    @pytest.mark.asyncio
    async def test_limit(self, client, session_factory):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i, subject in enumerate(["a", "b", "c"]):
            await save_story(session_factory, "user-1", subject, start + timedelta(minutes=i))

        response = await client.get("/api/v1/stories?limit=2", headers=auth_headers())

        assert [s["storySubject"] for s in response.json()["stories"]] == ["c", "b"]

    @pytest.mark.asyncio
    async def test_created_story_is_listed(self, client, seed_user):
        await seed_user("user-1", credits=2)
        created = (await client.post("/api/v1/stories", json=STORY_FORM, headers=auth_headers())).json()

        stories = (await client.get("/api/v1/stories", headers=auth_headers())).json()["stories"]

        assert [s["storyId"] for s in stories] == [created["storyId"]]

    @pytest.mark.asyncio
    async def test_empty(self, client):
        response = await client.get("/api/v1/stories", headers=auth_headers())
        assert response.json() == {"stories": []}

    @pytest.mark.asyncio
    async def test_requires_auth(self, client):
        assert (await client.get("/api/v1/stories")).status_code == 401


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthz(self, client):
        response = await client.get("/healthz")
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "payment_requests_total" in response.text
