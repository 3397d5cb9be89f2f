from decimal import Decimal
from typing import Any, Dict, Iterable, List

from loguru import logger

from fee_engine import rate_for_level, to_decimal
from models import LevelStats, ReferralNode, ReferralStats

EARNINGS_FIELDS = ("total_earned", "total_earnings", "earnings")


def node_earnings(user: Dict[str, Any]) -> Decimal:
    """
    earnings attributed to a referred user. unknown -> 0.
    """
    for field in EARNINGS_FIELDS:
        value = user.get(field)
        if value is not None:
            return to_decimal(value)
    return Decimal("0")


def flatten_referral_tree(nodes: Iterable[ReferralNode]) -> List[Dict[str, Any]]:
    """
    depth-first flatten: [{"user": {...}, "level": n}, ...].
    iterative so a deep (but capped) tree never hits the recursion limit.
    """
    flat = []
    stack = list(reversed(list(nodes)))
    while stack:
        node = stack.pop()
        flat.append({"user": node.user, "level": node.level})
        stack.extend(reversed(node.children))
    return flat


def aggregate_flat(entries: Iterable[Dict[str, Any]]) -> ReferralStats:
    """
    per-level count + earnings over flattened rows; order does not matter.
    """
    stats = ReferralStats()
    for entry in entries:
        level = entry["level"]
        bucket = stats.by_level.setdefault(level, LevelStats())
        bucket.count += 1
        bucket.total_earnings += node_earnings(entry["user"])
        stats.total_referrals += 1
    stats.by_level = dict(sorted(stats.by_level.items()))
    return stats


def aggregate_levels(nodes: Iterable[ReferralNode]) -> ReferralStats:
    return aggregate_flat(flatten_referral_tree(nodes))


def users_by_level(nodes: Iterable[ReferralNode]) -> Dict[int, List[Dict[str, Any]]]:
    grouped: Dict[int, List[Dict[str, Any]]] = {}
    for entry in flatten_referral_tree(nodes):
        grouped.setdefault(entry["level"], []).append(entry["user"])
    return dict(sorted(grouped.items()))


def expected_commissions(stats: ReferralStats, invested_by_level: Dict[int, Decimal]) -> Dict[int, Decimal]:
    """
    commission the root earns per level if every referral at that level
    invested `invested_by_level[level]` in total.
    """
    return {
        level: to_decimal(invested_by_level.get(level, 0)) * rate_for_level(level) / 100
        for level in stats.by_level
    }


def compare_with_backend(local: ReferralStats, remote: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    recompute-and-compare against the backend's own aggregation.

    remote: {"overall": {"total_referrals": ...}, "by_level": {"1": {"count": ..., "total_earnings": ...}}}
    returns one dict per disagreement; empty list means consistent.
    """
    mismatches = []

    overall = remote.get("overall") or {}
    if "total_referrals" in overall and int(overall["total_referrals"]) != local.total_referrals:
        mismatches.append(
            {
                "field": "total_referrals",
                "level": None,
                "local": local.total_referrals,
                "remote": int(overall["total_referrals"]),
            }
        )

    remote_levels = {int(k): v for k, v in (remote.get("by_level") or {}).items()}
    for level in sorted(set(remote_levels) | set(local.by_level)):
        mine = local.by_level.get(level, LevelStats())
        theirs = remote_levels.get(level) or {}

        remote_count = int(theirs.get("count", 0))
        if remote_count != mine.count:
            mismatches.append(
                {"field": "count", "level": level, "local": mine.count, "remote": remote_count}
            )

        if "total_earnings" in theirs:
            remote_earnings = to_decimal(theirs["total_earnings"])
            if remote_earnings != mine.total_earnings:
                mismatches.append(
                    {
                        "field": "total_earnings",
                        "level": level,
                        "local": mine.total_earnings,
                        "remote": remote_earnings,
                    }
                )

    if mismatches:
        logger.warning(f"Referral stats disagree with backend in {len(mismatches)} place(s)")
    return mismatches
