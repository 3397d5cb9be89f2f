from datetime import datetime, timezone
from decimal import Decimal

import pytest

from models import Staking, WithdrawalRequest
from staking_stats import (
    days_active,
    get_staking_stats,
    get_withdrawal_stats,
    progress_percent,
    unlock_date,
)

START = datetime(2026, 1, 1, tzinfo=timezone.utc)
NOW = datetime(2026, 4, 11, tzinfo=timezone.utc)  # 100 days after START


def _staking(id=1, amount="1000", status="active", yield_pct="0.5", lock=365, start=START):
    return Staking(
        id=id,
        user_id=7,
        package_id=1,
        stake_amount=Decimal(amount),
        status=status,
        start_date=start,
        daily_yield_percent=Decimal(yield_pct),
        lock_period_days=lock,
    )


def test_days_active_and_unlock_date():
    s = _staking()

    assert days_active(s, NOW) == 100
    assert unlock_date(s) == datetime(2027, 1, 1, tzinfo=timezone.utc)


def test_naive_start_dates_are_treated_as_utc():
    s = _staking(start=datetime(2026, 1, 1))

    assert days_active(s, NOW) == 100


def test_progress_is_clamped():
    assert progress_percent(_staking(lock=50), NOW) == Decimal("100")
    assert progress_percent(_staking(start=NOW), START) == Decimal("0")
    assert progress_percent(_staking(lock=0), NOW) == Decimal("0")


def test_staking_stats_totals():
    stakings = [
        _staking(id=1),
        _staking(id=2, amount="200", status="completed", yield_pct="1", lock=30),
        _staking(id=3, amount="50", status="free_staking", yield_pct="0", lock=0),
    ]

    stats = get_staking_stats(stakings, now=NOW)

    assert stats["total_staking_amount"] == Decimal("1250")
    assert stats["active_staking_amount"] == Decimal("1000")
    assert stats["completed_staking_amount"] == Decimal("200")
    assert stats["active_staking_number"] == 1
    assert stats["completed_staking_number"] == 1
    # 1000 * 0.5% * 100 days
    assert stats["earned_from_active"] == Decimal("500")
    # completed stakings always count a full 365-day term: 200 * 1% * 365
    assert stats["earned_from_completed"] == Decimal("730")

    progress = {p["id"]: p for p in stats["staking_progress"]}
    assert progress[1]["unlock_date"] == "2027-01-01T00:00:00+00:00"
    assert progress[1]["daily_reward"] == Decimal("5")
    assert progress[3]["unlock_date"] is None


def test_staking_stats_empty():
    stats = get_staking_stats([], now=NOW)

    assert stats["total_staking_amount"] == Decimal("0")
    assert stats["staking_progress"] == []


def test_withdrawal_net_amount_is_derived():
    w = WithdrawalRequest(id=1, amount=Decimal("100"), status="pending", fee_percent=Decimal("10"))

    assert w.net_amount == Decimal("90")
    assert w.model_dump()["net_amount"] == Decimal("90")


def test_withdrawal_with_invalid_fee_fails_on_read():
    w = WithdrawalRequest(id=1, amount=Decimal("100"), status="pending", fee_percent=Decimal("120"))

    with pytest.raises(ValueError):
        w.net_amount


def test_withdrawal_stats():
    withdrawals = [
        WithdrawalRequest(id=1, amount=Decimal("100"), status="pending", fee_percent=Decimal("10")),
        WithdrawalRequest(id=2, amount=Decimal("250"), status="completed", fee_percent=Decimal("10")),
        WithdrawalRequest(id=3, amount=Decimal("50"), status="completed", fee_percent=Decimal("0")),
        WithdrawalRequest(id=4, amount=Decimal("999"), status="rejected", fee_percent=Decimal("10")),
    ]

    stats = get_withdrawal_stats(withdrawals)

    assert stats == {
        "pending_amount": Decimal("100"),
        "completed_amount": Decimal("300"),
        "completed_net_amount": Decimal("275"),
    }
