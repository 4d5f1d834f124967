# /flowbot/services/user_variables.py

import logging
from typing import Any, Dict, Optional

from flowbot.services.query_executor import QueryExecutor
from flowbot.workflows.exceptions import UserNotFound

logger = logging.getLogger(__name__)


def _format_amount(value: float) -> str:
    return f"{value:g}"


class UserVariablesService:
    """
    Derives the read-only ``user.*`` variables from the loyalty profile.
    They are recomputed each time a node needs variables, so they always
    reflect the latest balance.
    """

    def __init__(self, queries: QueryExecutor):
        self.queries = queries

    async def resolve_user_id(self, project_id: str, chat_id: str, user_id: Optional[str]) -> Optional[str]:
        if user_id:
            return user_id
        found = await self.queries.execute("check_user_by_channel", {"project_id": project_id, "channel_id": chat_id})
        return found["user_id"]

    async def compute(self, project_id: str, chat_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        resolved = await self.resolve_user_id(project_id, chat_id, user_id)
        if not resolved:
            return {"user.registered": False}

        try:
            profile = await self.queries.execute("get_user_profile", {"user_id": resolved})
            referral = await self.queries.execute("get_referral_link", {"user_id": resolved})
        except UserNotFound:
            logger.warning(f"Linked user {resolved} no longer exists (chat {chat_id})")
            return {"user.registered": False}

        expiring = profile["expiring_bonuses"]
        return {
            "user.registered": True,
            "user.id": profile["id"],
            "user.first_name": profile.get("first_name") or "",
            "user.last_name": profile.get("last_name") or "",
            "user.full_name": profile["full_name"],
            "user.username": profile.get("username") or "",
            "user.phone": profile.get("phone") or "",
            "user.email": profile.get("email") or "",
            "user.level": profile["level"],
            "user.balance": profile["balance"],
            "user.balance_formatted": _format_amount(profile["balance"]),
            "user.total_earned": profile["total_earned"],
            "user.total_spent": profile["total_spent"],
            "user.total_purchases": profile["total_purchases"],
            "user.transaction_count": profile["transaction_count"],
            "user.bonus_count": profile["bonus_count"],
            "user.referral_count": profile["referral_count"],
            "user.referrer_name": profile.get("referrer_name") or "",
            "user.referral_code": referral["referral_code"],
            "user.referral_link": referral["referral_link"],
            "user.expiring_bonuses": round(sum(b["amount"] for b in expiring), 2),
            "user.expiring_bonus_count": len(expiring),
            "user.is_new": profile["transaction_count"] == 0,
        }
