# /flowbot/services/query_executor.py

"""
Named, parameterised operations that flows may call.

Flows never touch storage directly: an ``action.database_query`` node names
one of the queries registered here and passes parameters. Each query
declares its required and optional parameters, so an unknown name or a
missing parameter fails before anything is read or written.
"""

import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from flowbot.models.domain import Bonus, BonusType, Transaction, TransactionType, User
from flowbot.services.messenger import Messenger
from flowbot.services.repositories import LoyaltyRepository
from flowbot.utils.clock import utcnow
from flowbot.utils.metrics import query_counter
from flowbot.workflows.exceptions import (
    InsufficientBalance,
    QueryError,
    QueryNotFound,
    QueryParameterError,
    UserNotFound,
)

logger = logging.getLogger(__name__)

UPDATABLE_USER_FIELDS = {"first_name", "last_name", "username", "phone", "email", "level", "is_active"}
MAX_BONUS_DAYS = 3650


@dataclass(frozen=True)
class QuerySpec:
    name: str
    required: Tuple[str, ...]
    optional: Tuple[str, ...] = ()
    description: str = ""


def _amount(value: Any, name: str = "amount") -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise QueryParameterError(f"Parameter '{name}' must be a number, got {value!r}")
    if not math.isfinite(amount):
        raise QueryParameterError(f"Parameter '{name}' must be a finite number, got {value!r}")
    if amount <= 0:
        raise QueryParameterError(f"Parameter '{name}' must be greater than 0")
    return amount


def _days(value: Any, name: str = "expires_in_days") -> int:
    try:
        days = int(value)
    except (TypeError, ValueError, OverflowError):
        raise QueryParameterError(f"Parameter '{name}' must be a whole number of days, got {value!r}")
    if not 0 < days <= MAX_BONUS_DAYS:
        raise QueryParameterError(f"Parameter '{name}' must be between 1 and {MAX_BONUS_DAYS}")
    return days


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if not isinstance(value, datetime):
        try:
            value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise QueryParameterError(f"Invalid datetime {value!r}")
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _user_dict(user: User) -> Dict[str, Any]:
    return user.model_dump(mode="json")


class QueryExecutor:
    def __init__(
        self,
        loyalty: LoyaltyRepository,
        messenger: Messenger,
        bonus_expiry_days: int = 365,
        expiring_window_days: int = 30,
        referral_base_url: str = "https://t.me/flowbot",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.loyalty = loyalty
        self.messenger = messenger
        self.bonus_expiry_days = bonus_expiry_days
        self.expiring_window_days = expiring_window_days
        self.referral_base_url = referral_base_url.rstrip("/")
        self.clock = clock

        self._queries: Dict[str, Tuple[QuerySpec, Callable[..., Awaitable[Any]]]] = {}
        self._register(QuerySpec("check_user_by_channel", ("project_id",), ("channel_id", "phone", "email"),
                                 "Find a user by chat id, then phone, then email"), self.check_user_by_channel)
        self._register(QuerySpec("create_user", ("project_id", "channel_id"),
                                 ("username", "first_name", "last_name", "phone", "email", "referral_code"),
                                 "Register a chat user (returns the existing one if present)"), self.create_user)
        self._register(QuerySpec("add_bonus", ("user_id", "amount"), ("type", "description", "expires_at", "expires_in_days"),
                                 "Grant bonus points and log an EARN transaction"), self.add_bonus)
        self._register(QuerySpec("spend_bonus", ("user_id", "amount"), ("description",),
                                 "Spend points oldest-first and log a SPEND transaction"), self.spend_bonus)
        self._register(QuerySpec("get_user_balance", ("user_id",), (), "Current spendable balance"), self.get_user_balance)
        self._register(QuerySpec("update_user", ("user_id",), ("data",) + tuple(sorted(UPDATABLE_USER_FIELDS)),
                                 "Update profile fields"), self.update_user)
        self._register(QuerySpec("get_transactions", ("user_id",), ("limit",), "Recent transactions, newest first"),
                       self.get_transactions)
        self._register(QuerySpec("get_user_stats", ("user_id",), (), "Earned/spent totals and counts"), self.get_user_stats)
        self._register(QuerySpec("get_user_profile", ("user_id",), (), "Profile with balance and expiring bonuses"),
                       self.get_user_profile)
        self._register(QuerySpec("get_referral_link", ("user_id",), (), "Referral code and link"), self.get_referral_link)
        self._register(QuerySpec("send_message", ("chat_id", "text"), ("buttons",), "Send a chat message"), self.send_message)

    def _register(self, spec: QuerySpec, handler: Callable[..., Awaitable[Any]]) -> None:
        self._queries[spec.name] = (spec, handler)

    def catalogue(self) -> List[QuerySpec]:
        return [spec for spec, _ in self._queries.values()]

    def spec(self, name: str) -> QuerySpec:
        if name not in self._queries:
            raise QueryNotFound(f"Unknown query '{name}'")
        return self._queries[name][0]

    async def execute(self, name: str, params: Dict[str, Any]) -> Any:
        """
        Runs a named query after checking its parameters.

        Raises:
            QueryNotFound: the name is not in the catalogue.
            QueryParameterError: a required parameter is missing or invalid.
            QueryError: any other domain failure (unknown user, insufficient balance, ...).
        """
        spec = self.spec(name)
        missing = [p for p in spec.required if params.get(p) in (None, "")]
        if missing:
            query_counter.labels(query=name, status="invalid").inc()
            raise QueryParameterError(f"Query '{name}' is missing required parameter(s): {', '.join(missing)}")

        accepted = set(spec.required) | set(spec.optional)
        ignored = sorted(set(params) - accepted)
        if ignored:
            logger.debug(f"Query '{name}' ignoring unknown parameter(s): {ignored}")
        kwargs = {key: value for key, value in params.items() if key in accepted}

        _, handler = self._queries[name]
        try:
            result = await handler(**kwargs)
        except QueryError:
            query_counter.labels(query=name, status="error").inc()
            raise
        query_counter.labels(query=name, status="ok").inc()
        return result

    # ---------------- Users ---------------- #

    async def _require_user(self, user_id: str) -> User:
        user = await self.loyalty.get_user(str(user_id))
        if user is None:
            raise UserNotFound(f"User '{user_id}' not found")
        return user

    async def check_user_by_channel(self, project_id: str, channel_id: Optional[str] = None,
                                    phone: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Any]:
        if not (channel_id or phone or email):
            raise QueryParameterError("check_user_by_channel needs channel_id, phone or email")
        user = await self.loyalty.find_user(
            project_id,
            channel_id=str(channel_id) if channel_id else None,
            phone=phone,
            email=str(email).lower() if email else None,
        )
        return {"exists": user is not None, "user_id": user.id if user else None, "user": _user_dict(user) if user else None}

    async def create_user(self, project_id: str, channel_id: str, username: Optional[str] = None,
                          first_name: Optional[str] = None, last_name: Optional[str] = None,
                          phone: Optional[str] = None, email: Optional[str] = None,
                          referral_code: Optional[str] = None) -> Dict[str, Any]:
        existing = await self.loyalty.find_user(project_id, channel_id=str(channel_id))
        if existing:
            return {"created": False, "user_id": existing.id, "user": _user_dict(existing)}

        referred_by = None
        if referral_code:
            referrer = await self.loyalty.find_user_by_referral_code(project_id, referral_code)
            if referrer:
                referred_by = referrer.id
            else:
                logger.info(f"Referral code '{referral_code}' not found in project {project_id}")

        user = User(
            project_id=project_id,
            channel_id=str(channel_id),
            username=username,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            email=str(email).lower() if email else None,
            referral_code=secrets.token_hex(4).upper(),
            referred_by=referred_by,
        )
        await self.loyalty.insert_user(user)
        logger.info(f"Created user {user.id} for channel {channel_id} in project {project_id}")
        return {"created": True, "user_id": user.id, "user": _user_dict(user)}

    async def update_user(self, user_id: str, data: Optional[Dict[str, Any]] = None, **fields: Any) -> Dict[str, Any]:
        if data is not None and not isinstance(data, Mapping):
            raise QueryParameterError(f"Parameter 'data' must be an object, got {type(data).__name__}")
        changes = {**(data or {}), **fields}
        unknown = set(changes) - UPDATABLE_USER_FIELDS
        if unknown:
            raise QueryParameterError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        if not changes:
            raise QueryParameterError("update_user needs at least one field to change")
        if changes.get("email"):
            changes["email"] = str(changes["email"]).lower()
        await self._require_user(user_id)
        changes["updated_at"] = self.clock()
        user = await self.loyalty.update_user(str(user_id), changes)
        return _user_dict(user)

    # ---------------- Bonuses ---------------- #

    async def add_bonus(self, user_id: str, amount: Any, type: str = BonusType.MANUAL.value,
                        description: Optional[str] = None, expires_at: Any = None,
                        expires_in_days: Any = None) -> Dict[str, Any]:
        value = _amount(amount)
        try:
            bonus_type = BonusType(str(type).upper())
        except ValueError:
            raise QueryParameterError(f"Unknown bonus type '{type}'")
        user = await self._require_user(user_id)

        if bonus_type == BonusType.WELCOME:
            for bonus in await self.loyalty.list_bonuses(user.id):
                if bonus.type == BonusType.WELCOME:
                    logger.info(f"Welcome bonus already granted to user {user.id}")
                    return {"granted": False, "bonus_id": bonus.id, "amount": bonus.original_amount}

        now = self.clock()
        expiry = _parse_datetime(expires_at)
        if expiry is None:
            days = _days(expires_in_days) if expires_in_days not in (None, "") else self.bonus_expiry_days
            expiry = now + timedelta(days=days)

        bonus = Bonus(user_id=user.id, amount=value, original_amount=value, type=bonus_type,
                      description=description, expires_at=expiry, created_at=now)
        transaction = Transaction(user_id=user.id, type=TransactionType.EARN, amount=value,
                                  description=description or f"{bonus_type.value.title()} bonus",
                                  bonus_id=bonus.id, created_at=now)
        await self.loyalty.grant_bonus(bonus, transaction)
        logger.info(f"Granted {value:g} {bonus_type.value} bonus to user {user.id}")
        return {"granted": True, "bonus_id": bonus.id, "amount": value, "expires_at": expiry.isoformat()}

    async def spend_bonus(self, user_id: str, amount: Any, description: Optional[str] = None) -> Dict[str, Any]:
        value = _amount(amount)
        user = await self._require_user(user_id)
        now = self.clock()

        spendable = [b for b in await self.loyalty.list_bonuses(user.id) if b.is_spendable(now)]
        available = sum(b.amount for b in spendable)
        if available < value:
            raise InsufficientBalance(value, available)

        # Oldest bonuses are consumed first
        remaining_to_spend = value
        remaining: Dict[str, float] = {}
        for bonus in spendable:
            if remaining_to_spend <= 0:
                break
            used = min(bonus.amount, remaining_to_spend)
            remaining[bonus.id] = round(bonus.amount - used, 2)
            remaining_to_spend -= used

        transaction = Transaction(user_id=user.id, type=TransactionType.SPEND, amount=value,
                                  description=description or "Bonus spend", created_at=now)
        await self.loyalty.apply_spend(remaining, transaction)
        logger.info(f"User {user.id} spent {value:g} bonus points")
        return {"spent": value, "balance": round(available - value, 2), "transaction_id": transaction.id}

    async def _bonus_summary(self, user_id: str) -> Dict[str, Any]:
        now = self.clock()
        bonuses = await self.loyalty.list_bonuses(user_id)
        transactions = await self.loyalty.list_transactions(user_id)
        active = [b for b in bonuses if b.is_spendable(now)]
        window_end = now + timedelta(days=self.expiring_window_days)
        expiring = [b for b in active if b.expires_at is not None and b.expires_at <= window_end]
        return {
            "balance": round(sum(b.amount for b in active), 2),
            "total_earned": round(sum(t.amount for t in transactions if t.type == TransactionType.EARN), 2),
            "total_spent": round(sum(t.amount for t in transactions if t.type == TransactionType.SPEND), 2),
            "transaction_count": len(transactions),
            "bonus_count": len(active),
            "active_bonuses": active,
            "expiring_bonuses": expiring,
            "transactions": transactions,
        }

    async def get_user_balance(self, user_id: str) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        summary = await self._bonus_summary(user.id)
        return {
            "user_id": user.id,
            "balance": summary["balance"],
            "total_earned": summary["total_earned"],
            "total_spent": summary["total_spent"],
            "expiring_soon": round(sum(b.amount for b in summary["expiring_bonuses"]), 2),
        }

    async def get_transactions(self, user_id: str, limit: Any = 10) -> List[Dict[str, Any]]:
        user = await self._require_user(user_id)
        try:
            size = max(1, min(int(limit), 100))
        except (TypeError, ValueError):
            raise QueryParameterError(f"Parameter 'limit' must be an integer, got {limit!r}")
        return [t.model_dump(mode="json") for t in await self.loyalty.list_transactions(user.id, limit=size)]

    async def get_user_stats(self, user_id: str) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        summary = await self._bonus_summary(user.id)
        return {
            "user_id": user.id,
            "balance": summary["balance"],
            "total_earned": summary["total_earned"],
            "total_spent": summary["total_spent"],
            "transaction_count": summary["transaction_count"],
            "bonus_count": summary["bonus_count"],
            "referral_count": await self.loyalty.count_referrals(user.id),
            "total_purchases": user.total_purchases,
        }

    async def get_user_profile(self, user_id: str) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        summary = await self._bonus_summary(user.id)
        referrer = await self.loyalty.get_user(user.referred_by) if user.referred_by else None
        return {
            **_user_dict(user),
            "full_name": user.full_name,
            "balance": summary["balance"],
            "total_earned": summary["total_earned"],
            "total_spent": summary["total_spent"],
            "transaction_count": summary["transaction_count"],
            "bonus_count": summary["bonus_count"],
            "referral_count": await self.loyalty.count_referrals(user.id),
            "referrer_name": referrer.full_name if referrer else None,
            "active_bonuses": [b.model_dump(mode="json") for b in summary["active_bonuses"]],
            "expiring_bonuses": [b.model_dump(mode="json") for b in summary["expiring_bonuses"]],
            "recent_transactions": [t.model_dump(mode="json") for t in summary["transactions"][:5]],
        }

    async def get_referral_link(self, user_id: str) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        code = user.referral_code
        if not code:
            code = secrets.token_hex(4).upper()
            await self.loyalty.update_user(user.id, {"referral_code": code, "updated_at": self.clock()})
        return {"referral_code": code, "referral_link": f"{self.referral_base_url}?start=ref_{code}"}

    # ---------------- Messaging ---------------- #

    async def send_message(self, chat_id: str, text: str, buttons: Optional[List[List[dict]]] = None) -> Dict[str, Any]:
        message_id = await self.messenger.send_message(str(chat_id), text, buttons)
        return {"message_id": message_id}
