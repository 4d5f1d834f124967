# backend/tests/unit/test_query_executor.py
from datetime import datetime, timedelta, timezone

import pytest

from flowbot.models.domain import TransactionType
from flowbot.services.memory_store import InMemoryLoyaltyRepository
from flowbot.services.messenger import LogMessenger
from flowbot.services.query_executor import QueryExecutor
from flowbot.services.user_variables import UserVariablesService
from flowbot.workflows.exceptions import (
    InsufficientBalance,
    QueryNotFound,
    QueryParameterError,
    UserNotFound,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def loyalty():
    return InMemoryLoyaltyRepository()


@pytest.fixture
def queries(loyalty):
    return QueryExecutor(loyalty, LogMessenger(), referral_base_url="https://t.me/test_bot/", clock=lambda: NOW)


@pytest.fixture
def register(queries):
    async def _register(channel_id="chat-1", **extra):
        result = await queries.execute("create_user", {"project_id": "p1", "channel_id": channel_id, **extra})
        return result["user_id"]
    return _register


@pytest.mark.asyncio
async def test_unknown_query_is_rejected(queries):
    with pytest.raises(QueryNotFound):
        await queries.execute("drop_database", {})


@pytest.mark.asyncio
async def test_missing_required_parameters_are_listed(queries):
    with pytest.raises(QueryParameterError) as exc_info:
        await queries.execute("add_bonus", {"amount": 10})
    assert "user_id" in str(exc_info.value)


@pytest.mark.asyncio
async def test_create_user_is_idempotent_per_channel(queries, loyalty):
    first = await queries.execute("create_user", {"project_id": "p1", "channel_id": 42, "email": "ADA@Example.com"})
    second = await queries.execute("create_user", {"project_id": "p1", "channel_id": "42"})

    assert first["created"] is True
    assert second == {"created": False, "user_id": first["user_id"], "user": second["user"]}
    assert first["user"]["email"] == "ada@example.com"
    assert len(loyalty.users) == 1


@pytest.mark.asyncio
async def test_referral_code_links_referrer(queries, register):
    referrer_id = await register("chat-1")
    link = await queries.execute("get_referral_link", {"user_id": referrer_id})
    assert link["referral_link"] == f"https://t.me/test_bot?start=ref_{link['referral_code']}"

    await register("chat-2", referral_code=link["referral_code"])
    stats = await queries.execute("get_user_stats", {"user_id": referrer_id})
    assert stats["referral_count"] == 1


@pytest.mark.asyncio
async def test_check_user_by_channel(queries, register):
    user_id = await register("chat-7")
    found = await queries.execute("check_user_by_channel", {"project_id": "p1", "channel_id": "chat-7"})
    missing = await queries.execute("check_user_by_channel", {"project_id": "p1", "channel_id": "chat-8"})

    assert found["exists"] is True and found["user_id"] == user_id
    assert missing == {"exists": False, "user_id": None, "user": None}


@pytest.mark.asyncio
async def test_welcome_bonus_is_granted_once(queries, register):
    user_id = await register()
    first = await queries.execute("add_bonus", {"user_id": user_id, "amount": 100, "type": "welcome"})
    second = await queries.execute("add_bonus", {"user_id": user_id, "amount": 100, "type": "WELCOME"})

    assert first["granted"] is True
    assert first["expires_at"] == (NOW + timedelta(days=365)).isoformat()
    assert second["granted"] is False
    balance = await queries.execute("get_user_balance", {"user_id": user_id})
    assert balance["balance"] == 100


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, "abc"])
async def test_bonus_amount_must_be_positive(queries, register, amount):
    user_id = await register()
    with pytest.raises(QueryParameterError):
        await queries.execute("add_bonus", {"user_id": user_id, "amount": amount})


@pytest.mark.asyncio
async def test_spend_consumes_oldest_bonuses_first(queries, register, loyalty):
    user_id = await register()
    await queries.execute("add_bonus", {"user_id": user_id, "amount": 30, "expires_at": "2024-06-01T00:00:00Z"})
    queries.clock = lambda: NOW + timedelta(minutes=1)
    await queries.execute("add_bonus", {"user_id": user_id, "amount": 50})

    result = await queries.execute("spend_bonus", {"user_id": user_id, "amount": 40})

    assert result["spent"] == 40
    assert result["balance"] == 40
    remaining = sorted((b.original_amount, b.amount) for b in loyalty.bonuses.values())
    assert remaining == [(30, 0), (50, 40)]
    assert loyalty.transactions[-1].type == TransactionType.SPEND


@pytest.mark.asyncio
async def test_expired_bonuses_cannot_be_spent(queries, register):
    user_id = await register()
    await queries.execute("add_bonus", {"user_id": user_id, "amount": 30, "expires_in_days": 1})
    queries.clock = lambda: NOW + timedelta(days=2)

    with pytest.raises(InsufficientBalance):
        await queries.execute("spend_bonus", {"user_id": user_id, "amount": 10})


@pytest.mark.asyncio
async def test_insufficient_balance_writes_nothing(queries, register, loyalty):
    user_id = await register()
    await queries.execute("add_bonus", {"user_id": user_id, "amount": 20})
    before = len(loyalty.transactions)

    with pytest.raises(InsufficientBalance):
        await queries.execute("spend_bonus", {"user_id": user_id, "amount": 25})
    assert len(loyalty.transactions) == before


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["nan", "inf", "-inf", float("nan"), float("inf")])
async def test_non_finite_amounts_are_rejected(queries, register, loyalty, amount):
    user_id = await register()
    await queries.execute("add_bonus", {"user_id": user_id, "amount": 500})
    before = len(loyalty.transactions)

    with pytest.raises(QueryParameterError):
        await queries.execute("spend_bonus", {"user_id": user_id, "amount": amount})
    with pytest.raises(QueryParameterError):
        await queries.execute("add_bonus", {"user_id": user_id, "amount": amount})

    assert len(loyalty.transactions) == before
    balance = await queries.execute("get_user_balance", {"user_id": user_id})
    assert (balance["balance"], balance["total_spent"]) == (500, 0)


@pytest.mark.asyncio
@pytest.mark.parametrize("days", ["soon", "1.5", 0, -3, float("inf"), 10 ** 9])
async def test_bonus_expiry_days_must_be_a_sane_integer(queries, register, days):
    user_id = await register()
    with pytest.raises(QueryParameterError):
        await queries.execute("add_bonus", {"user_id": user_id, "amount": 10, "expires_in_days": days})


@pytest.mark.asyncio
@pytest.mark.parametrize("data", ["phone=1", ["phone"], 42])
async def test_update_user_data_must_be_an_object(queries, register, data):
    user_id = await register()
    with pytest.raises(QueryParameterError):
        await queries.execute("update_user", {"user_id": user_id, "data": data})


@pytest.mark.asyncio
async def test_unknown_user_is_a_query_error(queries):
    with pytest.raises(UserNotFound):
        await queries.execute("get_user_balance", {"user_id": "ghost"})


@pytest.mark.asyncio
async def test_update_user_only_allows_profile_fields(queries, register):
    user_id = await register()
    updated = await queries.execute("update_user", {"user_id": user_id, "data": {"phone": "+15550100"}})
    assert updated["phone"] == "+15550100"

    with pytest.raises(QueryParameterError):
        await queries.execute("update_user", {"user_id": user_id, "data": {"referred_by": "me"}})


@pytest.mark.asyncio
async def test_transactions_are_newest_first_and_capped(queries, register):
    user_id = await register()
    for minute in range(3):
        queries.clock = lambda m=minute: NOW + timedelta(minutes=m)
        await queries.execute("add_bonus", {"user_id": user_id, "amount": 10 + minute})

    history = await queries.execute("get_transactions", {"user_id": user_id, "limit": 2})
    assert [t["amount"] for t in history] == [12, 11]


@pytest.mark.asyncio
async def test_user_variables_reflect_latest_balance(queries, register):
    variables = UserVariablesService(queries)
    assert await variables.compute("p1", "chat-1") == {"user.registered": False}

    user_id = await register("chat-1", first_name="Ada", last_name="Lovelace")
    await queries.execute("add_bonus", {"user_id": user_id, "amount": 100, "expires_in_days": 10})
    computed = await variables.compute("p1", "chat-1")

    assert computed["user.registered"] is True
    assert computed["user.id"] == user_id
    assert computed["user.full_name"] == "Ada Lovelace"
    assert computed["user.balance"] == 100
    assert computed["user.balance_formatted"] == "100"
    assert computed["user.expiring_bonuses"] == 100
    assert computed["user.is_new"] is False
    assert computed["user.referral_link"].startswith("https://t.me/test_bot?start=ref_")
