from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from fee_engine import daily_reward, net_withdrawal, total_reward
from models import Staking, WithdrawalRequest

FULL_TERM_DAYS = 365


def _utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def days_active(staking: Staking, now: Optional[datetime] = None) -> int:
    now = _utc(now or datetime.now(timezone.utc))
    elapsed = now - _utc(staking.start_date)
    return max(0, elapsed.days)


def unlock_date(staking: Staking) -> Optional[datetime]:
    if not staking.lock_period_days:
        return None
    return _utc(staking.start_date) + timedelta(days=staking.lock_period_days)


def progress_percent(staking: Staking, now: Optional[datetime] = None) -> Decimal:
    if not staking.lock_period_days:
        return Decimal("0")
    pct = Decimal(days_active(staking, now)) * 100 / Decimal(staking.lock_period_days)
    return min(Decimal("100"), max(Decimal("0"), pct))


def get_staking_stats(stakings: Iterable[Staking], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    dashboard totals over a user's confirmed stakings.

    earned_from_active: yield accrued so far on active stakings
    earned_from_completed: a full year of yield per completed staking
    """
    stats = {
        "total_staking_amount": Decimal("0"),
        "active_staking_amount": Decimal("0"),
        "completed_staking_amount": Decimal("0"),
        "active_staking_number": 0,
        "completed_staking_number": 0,
        "earned_from_active": Decimal("0"),
        "earned_from_completed": Decimal("0"),
        "staking_progress": [],
    }

    for s in stakings:
        stats["total_staking_amount"] += s.stake_amount

        if s.status == "active":
            stats["active_staking_amount"] += s.stake_amount
            stats["active_staking_number"] += 1
            stats["earned_from_active"] += total_reward(
                s.stake_amount, s.daily_yield_percent, days_active(s, now)
            )
        elif s.status == "completed":
            stats["completed_staking_amount"] += s.stake_amount
            stats["completed_staking_number"] += 1
            stats["earned_from_completed"] += total_reward(
                s.stake_amount, s.daily_yield_percent, FULL_TERM_DAYS
            )

        unlock = unlock_date(s)
        stats["staking_progress"].append(
            {
                "id": s.id,
                "unlock_date": unlock.isoformat() if unlock else None,
                "progress_percentage": progress_percent(s, now),
                "daily_reward": daily_reward(s.stake_amount, s.daily_yield_percent),
            }
        )

    return stats


def get_withdrawal_stats(withdrawals: Iterable[WithdrawalRequest]) -> Dict[str, Decimal]:
    """
    gross totals for pending / completed withdrawals plus what completed ones paid out net.
    """
    pending = completed = completed_net = Decimal("0")
    for w in withdrawals:
        if w.status == "pending":
            pending += w.amount
        elif w.status == "completed":
            completed += w.amount
            completed_net += net_withdrawal(w.amount, w.fee_percent)
    return {
        "pending_amount": pending,
        "completed_amount": completed,
        "completed_net_amount": completed_net,
    }
