# /flowbot/models/domain.py

from enum import Enum
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field

from flowbot.models.flow import new_id
from flowbot.utils.clock import utcnow

# Loyalty records the query executor reads and writes on behalf of flows.


class BonusType(str, Enum):
    WELCOME = "WELCOME"
    PURCHASE = "PURCHASE"
    REFERRAL = "REFERRAL"
    BIRTHDAY = "BIRTHDAY"
    MANUAL = "MANUAL"
    PROMO = "PROMO"


class TransactionType(str, Enum):
    EARN = "EARN"
    SPEND = "SPEND"
    EXPIRE = "EXPIRE"


class User(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    channel_id: str = Field(description="Chat platform user/chat identifier")
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    referral_code: Optional[str] = None
    referred_by: Optional[str] = Field(default=None, description="User id of the referrer")
    level: str = "Base"
    total_purchases: float = 0.0
    is_active: bool = True
    registered_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class Bonus(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    amount: float = Field(ge=0, description="Remaining spendable amount")
    original_amount: float = Field(gt=0)
    type: BonusType = BonusType.MANUAL
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_spendable(self, now: datetime) -> bool:
        return self.amount > 0 and (self.expires_at is None or self.expires_at > now)


class Transaction(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    type: TransactionType
    amount: float
    description: Optional[str] = None
    bonus_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
