from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from fee_engine import net_withdrawal

UserId = Union[int, str]


class StakingPackage(BaseModel):
    """read-only catalog entry managed by the admin backend."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    stake_amount: Decimal
    daily_yield_percent: Decimal = Decimal("0")
    lock_period_days: int = 0


class PendingStakeIntent(BaseModel):
    """
    the local bridge between "transfer mined" and "backend recorded the stake".
    `created_at_ms` is serialized as `timestamp` so the TTL check can read it inline.
    """

    model_config = ConfigDict(populate_by_name=True)

    tx_hash: str
    package_id: int
    user_id: int
    package_name: str
    amount: Decimal
    created_at_ms: int = Field(..., alias="timestamp")


class Staking(BaseModel):
    id: int
    user_id: int
    package_id: int
    stake_amount: Decimal
    status: Literal["active", "completed", "free_staking"]
    start_date: datetime
    last_reward_date: Optional[datetime] = None
    daily_yield_percent: Decimal = Decimal("0")
    lock_period_days: int = 0


class ReferralRelationship(BaseModel):
    model_config = ConfigDict(frozen=True)

    referrer_id: UserId
    referred_id: UserId


class ReferralNode(BaseModel):
    user: Dict[str, Any]
    level: int
    children: List["ReferralNode"] = Field(default_factory=list)


class LevelStats(BaseModel):
    count: int = 0
    total_earnings: Decimal = Decimal("0")


class ReferralStats(BaseModel):
    total_referrals: int = 0
    by_level: Dict[int, LevelStats] = Field(default_factory=dict)


class WithdrawalRequest(BaseModel):
    id: int
    amount: Decimal
    status: Literal["pending", "approved", "rejected", "completed"]
    fee_percent: Decimal = Decimal("0")

    @computed_field
    @property
    def net_amount(self) -> Decimal:
        # never stored, always derived from the fee on the request
        return net_withdrawal(self.amount, self.fee_percent)


ReferralNode.model_rebuild()
