from decimal import Decimal, ROUND_DOWN, getcontext
from typing import Dict, Mapping, Union

getcontext().prec = 28  # token amounts carry up to 18 decimals

Number = Union[Decimal, int, str]

HUNDRED = Decimal("100")
QUANT = Decimal("0.000001")

# level -> percent of the referred user's stake
DEFAULT_COMMISSION_RATES: Dict[int, Decimal] = {
    1: Decimal("5"),
    2: Decimal("3"),
    3: Decimal("2"),
    4: Decimal("1"),
    5: Decimal("0.5"),
}


def to_decimal(value: Number) -> Decimal:
    """
    coerce to Decimal. floats go through str() so 0.1 stays 0.1.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def _percent(value: Number, name: str) -> Decimal:
    pct = to_decimal(value)
    if pct < 0 or pct > HUNDRED:
        raise ValueError(f"{name} must be between 0 and 100, got {pct}")
    return pct


def _amount(value: Number, name: str) -> Decimal:
    amount = to_decimal(value)
    if amount < 0:
        raise ValueError(f"{name} cannot be negative, got {amount}")
    return amount


def quantize(value: Decimal) -> Decimal:
    return value.quantize(QUANT, rounding=ROUND_DOWN)


# ---------
# commission schedule
# ---------

def rate_for_level(level: int, schedule: Mapping[int, Decimal] = DEFAULT_COMMISSION_RATES) -> Decimal:
    """
    commission percent for a referral level. anything outside the table is 0.
    """
    return to_decimal(schedule.get(level, Decimal("0")))


def commission_for_level(amount: Number, level: int, schedule: Mapping[int, Decimal] = DEFAULT_COMMISSION_RATES) -> Decimal:
    return _amount(amount, "amount") * rate_for_level(level, schedule) / HUNDRED


def commission_breakdown(amount: Number, lineage, schedule: Mapping[int, Decimal] = DEFAULT_COMMISSION_RATES):
    """
    amount: stake amount the commissions are taken from
    lineage: [L1, L2, ...] upline user ids (None where the chain stops)

    returns {level: commission} for every level that has a beneficiary,
    rounded down to 6 dp.
    """
    splits = {}
    for idx, beneficiary in enumerate(lineage):
        level = idx + 1
        if beneficiary is None:
            continue
        splits[level] = quantize(commission_for_level(amount, level, schedule))
    return splits


# ---------
# rewards / fees
# ---------

def daily_reward(stake_amount: Number, daily_yield_percent: Number) -> Decimal:
    return _amount(stake_amount, "stake_amount") * _amount(daily_yield_percent, "daily_yield_percent") / HUNDRED


def total_reward(stake_amount: Number, daily_yield_percent: Number, days: int) -> Decimal:
    if days < 0:
        raise ValueError(f"days cannot be negative, got {days}")
    return daily_reward(stake_amount, daily_yield_percent) * days


def withdrawal_fee(gross: Number, fee_percent: Number) -> Decimal:
    return _amount(gross, "gross") * _percent(fee_percent, "fee_percent") / HUNDRED


def net_withdrawal(gross: Number, fee_percent: Number) -> Decimal:
    """
    gross * (1 - fee_percent / 100)
    """
    gross = _amount(gross, "gross")
    return gross * (1 - _percent(fee_percent, "fee_percent") / HUNDRED)


def stake_payment_amount(stake_amount: Number, token_price: Number) -> Decimal:
    """
    USDT owed for a package: token amount * token price.
    """
    price = _amount(token_price, "token_price")
    if price == 0:
        raise ValueError("token_price must be positive")
    return _amount(stake_amount, "stake_amount") * price


def to_base_units(amount: Number, decimals: int) -> int:
    """
    token amount -> integer base units, truncating anything past `decimals`.
    """
    scaled = _amount(amount, "amount") * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))
