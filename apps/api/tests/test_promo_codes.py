import asyncio
from datetime import timedelta

import pytest

from services import transaction_log
from services.credit_errors import (
    AlreadyRedeemed,
    DuplicatePromoCode,
    ExpiredCode,
    FullyRedeemed,
    PromoCodeError,
    UnknownCode,
)
from services.credits import get_balance, grant_credits
from services.promo_codes import (
    create_promo_code,
    generate_promo_codes,
    get_promo_code,
    redeem_promo_code,
)
from services.subscriptions import get_subscription_state
from services.transaction_log import ensure_utc, utc_now


USER_ID = "promo-user"


@pytest.mark.asyncio
async def test_redeem_grants_credits_once_per_account(db):
    await grant_credits(USER_ID, db, amount=200, reason="purchase", ext_ref="seed-1")
    await create_promo_code(db, code="WELCOME10", credit_amount=10)

    result = await redeem_promo_code(USER_ID, " welcome10 ", db)

    assert result.code == "WELCOME10"
    assert result.credits_granted == 10
    assert result.new_balance == 210
    assert result.subscription_granted is None

    with pytest.raises(AlreadyRedeemed):
        await redeem_promo_code(USER_ID, "WELCOME10", db)
    assert await get_balance(USER_ID, db) == 210

    entry = await transaction_log.find_by_ext_ref(f"promo:WELCOME10:{USER_ID}", db)
    assert entry.reason == "promo:WELCOME10"
    assert ensure_utc(entry.expires_at) > utc_now() + timedelta(days=300)


@pytest.mark.asyncio
async def test_same_code_can_be_redeemed_by_different_accounts(db):
    await create_promo_code(db, code="FRIENDS", credit_amount=5)

    first = await redeem_promo_code("alice", "FRIENDS", db)
    second = await redeem_promo_code("bob", "FRIENDS", db)

    assert first.new_balance == 5
    assert second.new_balance == 5


@pytest.mark.asyncio
async def test_unknown_and_inactive_codes_are_indistinguishable(db):
    promo = await create_promo_code(db, code="RETIRED", credit_amount=5)
    promo.is_active = False
    await db.commit()

    with pytest.raises(UnknownCode) as missing:
        await redeem_promo_code(USER_ID, "NOPE", db)
    with pytest.raises(UnknownCode) as inactive:
        await redeem_promo_code(USER_ID, "RETIRED", db)
    with pytest.raises(UnknownCode):
        await redeem_promo_code(USER_ID, "   ", db)

    assert missing.value.to_detail() == inactive.value.to_detail()
    assert await get_balance(USER_ID, db) == 0


@pytest.mark.asyncio
async def test_expired_code_is_rejected(db):
    await create_promo_code(db, code="OLDNEWS", credit_amount=5, expires_at=utc_now() - timedelta(minutes=1))

    with pytest.raises(ExpiredCode):
        await redeem_promo_code(USER_ID, "oldnews", db)
    assert await transaction_log.count_transactions(USER_ID, db) == 0


@pytest.mark.asyncio
async def test_code_with_subscription_starts_and_extends_tier(db):
    now = utc_now()
    await create_promo_code(db, code="PRO30", credit_amount=100, subscription_tier="pro", subscription_days=30)
    await create_promo_code(db, code="STARTER7", subscription_tier="starter", subscription_days=7)

    result = await redeem_promo_code(USER_ID, "PRO30", db, now=now)
    assert result.subscription_granted == "pro"
    assert result.subscription_days == 30
    assert result.new_balance == 100

    state = await get_subscription_state(USER_ID, db, now=now)
    assert state.is_active
    assert state.tier == "pro"
    assert state.ends_at == now + timedelta(days=30)

    # Subscription-only code: no credits, lower tier never downgrades, days stack.
    extra = await redeem_promo_code(USER_ID, "STARTER7", db, now=now)
    assert extra.credits_granted == 0
    assert extra.new_balance == 100
    state = await get_subscription_state(USER_ID, db, now=now)
    assert state.tier == "pro"
    assert state.ends_at == now + timedelta(days=37)

    with pytest.raises(AlreadyRedeemed):
        await redeem_promo_code(USER_ID, "STARTER7", db, now=now)
    state = await get_subscription_state(USER_ID, db, now=now)
    assert state.ends_at == now + timedelta(days=37)


@pytest.mark.asyncio
async def test_multi_use_code_can_be_redeemed_repeatedly(db):
    await create_promo_code(db, code="REFILL", credit_amount=3, single_use_per_account=False)

    results = [await redeem_promo_code(USER_ID, "REFILL", db) for _ in range(3)]

    assert [r.new_balance for r in results] == [3, 6, 9]
    assert await transaction_log.count_by_reason("promo:REFILL", db, user_id=USER_ID) == 3


@pytest.mark.asyncio
async def test_create_promo_code_validation(db):
    await create_promo_code(db, code="launch", credit_amount=1)
    assert (await get_promo_code("LAUNCH", db)).code == "LAUNCH"

    with pytest.raises(DuplicatePromoCode):
        await create_promo_code(db, code="LAUNCH", credit_amount=1)
    with pytest.raises(PromoCodeError):
        await create_promo_code(db, code="EMPTY")
    with pytest.raises(PromoCodeError):
        await create_promo_code(db, code="NODAYS", subscription_tier="pro")
    with pytest.raises(PromoCodeError):
        await create_promo_code(db, code="X" * 33, credit_amount=1)


@pytest.mark.asyncio
async def test_generate_promo_codes_uses_prefix(db):
    codes = await generate_promo_codes(db, prefix="beta", count=5, credit_amount=25, notes="Beta tester")

    assert len(codes) == 5
    assert len(set(codes)) == 5
    assert all(code.startswith("BETA") and len(code) == 12 for code in codes)
    promo = await get_promo_code(codes[0], db)
    assert promo.credit_amount == 25
    assert promo.notes == "Beta tester"


@pytest.mark.asyncio
async def test_generated_code_is_redeemable_once_overall(db):
    (code,) = await generate_promo_codes(db, prefix="gift", count=1, credit_amount=10)
    assert (await get_promo_code(code, db)).max_uses == 1

    first = await redeem_promo_code("user-0", code, db)
    assert first.new_balance == 10

    for index in range(1, 5):
        with pytest.raises(FullyRedeemed):
            await redeem_promo_code(f"user-{index}", code, db)
        assert await get_balance(f"user-{index}", db) == 0
    assert await transaction_log.count_by_reason(f"promo:{code}", db) == 1


@pytest.mark.asyncio
async def test_max_uses_caps_redemptions_across_accounts(db):
    await create_promo_code(db, code="DUO", credit_amount=5, max_uses=2)

    await redeem_promo_code("alice", "DUO", db)
    await redeem_promo_code("bob", "DUO", db)
    with pytest.raises(FullyRedeemed) as exc_info:
        await redeem_promo_code("carol", "DUO", db)

    assert exc_info.value.to_detail()["code"] == "CODE_FULLY_REDEEMED"
    with pytest.raises(PromoCodeError):
        await create_promo_code(db, code="NOUSES", credit_amount=5, max_uses=0)


@pytest.mark.asyncio
async def test_concurrent_redemptions_respect_max_uses(session_maker):
    async with session_maker() as db:
        await create_promo_code(db, code="RUSH", credit_amount=5, max_uses=1)

    async def attempt(index):
        async with session_maker() as session:
            try:
                return await redeem_promo_code(f"rusher-{index}", "RUSH", session)
            except FullyRedeemed as exc:
                return exc

    outcomes = await asyncio.gather(*(attempt(i) for i in range(5)))

    assert sum(1 for o in outcomes if not isinstance(o, FullyRedeemed)) == 1
    async with session_maker() as db:
        assert await transaction_log.count_by_reason("promo:RUSH", db) == 1
