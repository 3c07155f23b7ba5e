import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from jose import jwt
from sqlalchemy.exc import OperationalError

from config import settings
from database import get_db
from main import app
from services import transaction_log
from services.session_token import PIPELINE_SCOPES, USER_SCOPES, issue_session_token


ADMIN_KEY = "test-admin-key"


@pytest_asyncio.fixture
async def api_client(session_maker, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


def _auth(user_id: str, scopes=USER_SCOPES):
    token = issue_session_token(user_id, scopes=scopes)["token"]
    return {"Authorization": f"Bearer {token}"}


def _admin():
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.mark.asyncio
async def test_consume_and_promo_flow(api_client):
    user = "api-user"
    headers = _auth(user)

    seed = await api_client.post(
        "/admin/grants",
        json={"user_id": user, "amount": 200, "reason": "purchase", "ext_ref": "seed-1"},
        headers=_admin(),
    )
    assert seed.status_code == 200
    assert seed.json()["new_balance"] == 200

    first = await api_client.post("/credits/consume", json={"job_id": "J1"}, headers=headers)
    assert first.status_code == 200
    assert first.json()["remaining_balance"] == 199
    assert first.json()["replayed"] is False

    retry = await api_client.post("/credits/consume", json={"job_id": "J1"}, headers=headers)
    assert retry.status_code == 200
    assert retry.json()["remaining_balance"] == 199
    assert retry.json()["replayed"] is True

    created = await api_client.post(
        "/admin/promocodes",
        json={"code": "WELCOME10", "credit_amount": 10},
        headers=_admin(),
    )
    assert created.status_code == 200
    assert created.json()["codes"] == ["WELCOME10"]

    redeemed = await api_client.post("/promocodes/redeem", json={"code": "welcome10"}, headers=headers)
    assert redeemed.status_code == 200
    assert redeemed.json()["success"] is True
    assert redeemed.json()["new_balance"] == 209

    again = await api_client.post("/promocodes/redeem", json={"code": "WELCOME10"}, headers=headers)
    assert again.status_code == 400
    assert again.json()["detail"]["code"] == "ALREADY_REDEEMED"

    balance = await api_client.get("/credits/balance", headers=headers)
    assert balance.status_code == 200
    assert balance.json()["usable_credits"] == 209
    assert balance.json()["total_checks_performed"] == 1

    history = await api_client.get("/credits/history", params={"limit": 10}, headers=headers)
    assert history.json()["total_count"] == 3
    assert [entry["delta"] for entry in history.json()["transactions"]] == [10, -1, 200]


@pytest.mark.asyncio
async def test_consume_without_credits_is_payment_required(api_client):
    response = await api_client.post(
        "/credits/consume",
        json={"job_id": "deep-1", "scan_type": "deep"},
        headers=_auth("broke-user"),
    )

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["code"] == "INSUFFICIENT_CREDITS"
    assert detail["required"] == 2
    assert detail["shortfall"] == 2


@pytest.mark.asyncio
async def test_user_scope_and_authentication_are_enforced(api_client):
    missing = await api_client.get("/credits/balance")
    assert missing.status_code == 401

    cross_user = await api_client.post(
        "/credits/consume",
        json={"job_id": "J9", "user_id": "someone-else"},
        headers=_auth("api-user"),
    )
    assert cross_user.status_code == 403

    unknown_scan = await api_client.post(
        "/credits/consume",
        json={"job_id": "J9", "scan_type": "forensic"},
        headers=_auth("api-user"),
    )
    assert unknown_scan.status_code == 422


@pytest.mark.asyncio
async def test_admin_endpoints_require_key(api_client, monkeypatch):
    grant = {"user_id": "api-user", "amount": 5}

    assert (await api_client.post("/admin/grants", json=grant)).status_code == 403
    assert (await api_client.post("/admin/grants", json=grant, headers={"X-Admin-Key": "wrong"})).status_code == 403

    monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
    assert (await api_client.post("/admin/grants", json=grant, headers=_admin())).status_code == 503


@pytest.mark.asyncio
async def test_purchase_redelivery_is_absorbed(api_client):
    payload = {"user_id": "buyer", "pack": "starter", "event_id": "evt_123"}

    first = await api_client.post("/billing/purchases", json=payload, headers=_admin())
    second = await api_client.post("/billing/purchases", json=payload, headers=_admin())

    assert first.status_code == 200
    assert first.json()["credits_added"] == 50
    assert second.json()["idempotent"] is True
    assert second.json()["credits_added"] == 0
    assert second.json()["balance_after"] == 50

    view = await api_client.get("/admin/users/buyer/balance", headers=_admin())
    assert view.json()["usable_credits"] == 50
    assert view.json()["starter_pack_purchased"] is True

    unknown = await api_client.post(
        "/billing/purchases",
        json={"user_id": "buyer", "pack": "enterprise", "event_id": "evt_124"},
        headers=_admin(),
    )
    assert unknown.status_code == 422


@pytest.mark.asyncio
async def test_refund_and_subscription_override(api_client):
    user = "support-case"
    await api_client.post("/admin/grants", json={"user_id": user, "amount": 2}, headers=_admin())
    await api_client.post("/credits/consume", json={"job_id": "crashed"}, headers=_auth(user))

    refund = await api_client.post("/admin/refunds", json={"user_id": user, "job_id": "crashed"}, headers=_admin())
    assert refund.status_code == 200
    assert refund.json()["new_balance"] == 2

    missing = await api_client.post("/admin/refunds", json={"user_id": user, "job_id": "nope"}, headers=_admin())
    assert missing.status_code == 422

    override = await api_client.put(f"/admin/subscriptions/{user}", json={"tier": "pro", "days": 30}, headers=_admin())
    assert override.status_code == 200
    assert override.json()["subscription"]["tier"] == "pro"
    assert override.json()["subscription"]["days_remaining"] == 30


@pytest.mark.asyncio
async def test_promo_redemption_is_rate_limited_per_account(api_client, monkeypatch):
    monkeypatch.setattr(settings, "REDIS_URL", "redis://127.0.0.1:1/0")
    app.state.disable_rate_limits = False
    attacker = _auth("guesser")

    statuses = []
    for attempt in range(settings.PROMO_REDEEM_RATE_LIMIT + 1):
        response = await api_client.post("/promocodes/redeem", json={"code": f"GUESS{attempt}"}, headers=attacker)
        statuses.append(response.status_code)

    assert statuses[:-1] == [400] * settings.PROMO_REDEEM_RATE_LIMIT
    assert statuses[-1] == 429

    other = await api_client.post("/promocodes/redeem", json={"code": "GUESS"}, headers=_auth("bystander"))
    assert other.status_code == 400


@pytest.mark.asyncio
async def test_plans_are_public(api_client):
    response = await api_client.get("/billing/plans")

    assert response.status_code == 200
    assert {pack["key"] for pack in response.json()["packs"]} == {"starter", "pro"}
    assert response.json()["scan_costs"] == {"basic": 1, "deep": 2}


@pytest.mark.asyncio
async def test_liveness_endpoint(api_client):
    response = await api_client.get("/health/live")

    assert response.status_code == 200
    assert response.json() == {"alive": True}


@pytest.mark.asyncio
async def test_pipeline_token_can_only_consume(api_client):
    user = "pipeline-user"
    await api_client.post("/admin/grants", json={"user_id": user, "amount": 2}, headers=_admin())
    pipeline = _auth(user, scopes=PIPELINE_SCOPES)

    consumed = await api_client.post("/credits/consume", json={"job_id": "P1"}, headers=pipeline)
    assert consumed.status_code == 200
    assert consumed.json()["remaining_balance"] == 1

    assert (await api_client.get("/credits/balance", headers=pipeline)).status_code == 403
    assert (await api_client.post("/promocodes/redeem", json={"code": "ANY"}, headers=pipeline)).status_code == 403
    assert (await api_client.post("/credits/monthly-free", headers=pipeline)).status_code == 403


@pytest.mark.asyncio
async def test_token_for_another_audience_is_rejected(api_client):
    foreign = jwt.encode(
        {"sub": "api-user", "aud": "some-other-service", "type": "scan_credits_session", "scope": "credits:read"},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )

    response = await api_client.get("/credits/balance", headers={"Authorization": f"Bearer {foreign}"})

    assert response.status_code == 401


def test_unknown_scopes_cannot_be_issued():
    with pytest.raises(ValueError):
        issue_session_token("api-user", scopes=("credits:admin",))
    with pytest.raises(ValueError):
        issue_session_token("api-user", scopes=())


@pytest.mark.asyncio
async def test_subscription_purchase_redelivery_extends_once(api_client):
    payload = {"user_id": "subscriber", "pack": "pro_monthly", "event_id": "evt_sub_1"}

    first = await api_client.post("/billing/purchases", json=payload, headers=_admin())
    second = await api_client.post("/billing/purchases", json=payload, headers=_admin())

    assert first.status_code == 200
    assert first.json()["credits_added"] == 100
    assert first.json()["subscription"]["tier"] == "pro"
    assert second.json()["idempotent"] is True
    assert second.json()["subscription"]["days_remaining"] == 30
    assert second.json()["subscription"]["ends_at"] == first.json()["subscription"]["ends_at"]
    assert second.json()["balance_after"] == 100


@pytest.mark.asyncio
async def test_monthly_free_scan_endpoints(api_client):
    headers = _auth("free-tier")

    status = await api_client.get("/credits/monthly-free", headers=headers)
    assert status.status_code == 200
    assert status.json()["can_use"] is True

    claimed = await api_client.post("/credits/monthly-free", headers=headers)
    assert claimed.status_code == 200
    assert claimed.json()["credited"] == 1

    again = await api_client.post("/credits/monthly-free", headers=headers)
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "MONTHLY_FREE_SCAN_USED"
    assert again.json()["detail"]["days_until_reset"] == 30

    balance = await api_client.get("/credits/balance", headers=headers)
    assert balance.json()["usable_credits"] == 1


@pytest.mark.asyncio
async def test_generated_code_is_redeemed_only_once(api_client):
    created = await api_client.post(
        "/admin/promocodes",
        json={"prefix": "GIFT", "count": 1, "credit_amount": 10},
        headers=_admin(),
    )
    assert created.status_code == 200
    code = created.json()["codes"][0]

    statuses = []
    for index in range(5):
        response = await api_client.post("/promocodes/redeem", json={"code": code}, headers=_auth(f"gift-{index}"))
        statuses.append(response.status_code)

    assert statuses == [200, 400, 400, 400, 400]
    rejected = await api_client.post("/promocodes/redeem", json={"code": code}, headers=_auth("gift-late"))
    assert rejected.json()["detail"]["code"] == "CODE_FULLY_REDEEMED"


@pytest.mark.asyncio
async def test_balance_read_outage_is_service_unavailable(api_client, monkeypatch):
    async def failing_replay(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is down"))

    monkeypatch.setattr(transaction_log, "replay_balance", failing_replay)

    response = await api_client.get("/credits/balance", headers=_auth("outage-user"))

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "LEDGER_UNAVAILABLE"
    assert "Retry-After" in response.headers
