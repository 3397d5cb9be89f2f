from decimal import Decimal
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from backend_client import BackendClient, BackendError, SettingsLookup
from config import get_settings
from errors import (
    ChainSwitchRejected,
    ConfirmationFailed,
    InsufficientFunds,
    IntentExpired,
    IntentNotPersisted,
    NoPendingStake,
    StakeAlreadyPending,
    StakingError,
    TransferFailed,
    TransferUnconfirmed,
    UserRejectedTransfer,
    WalletUnavailable,
    WrongWallet,
)
from fee_engine import (
    DEFAULT_COMMISSION_RATES,
    daily_reward,
    net_withdrawal,
    rate_for_level,
    total_reward,
    withdrawal_fee,
)
from kv_store import PostgresKeyValueStore
from models import PendingStakeIntent, ReferralNode, ReferralStats
from pending_store import PendingStakeStore
from referral_db import load_referral_forest, load_referral_network, register_referral_db
from referral_stats import aggregate_levels, compare_with_backend, users_by_level
from stake_coordinator import StakeConfirmationCoordinator
from staking_stats import get_staking_stats, get_withdrawal_stats
from wallet_gateway import Web3WalletGateway


app = FastAPI(title="GreenDash Staking Core", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# pydantic models (requests)
# ---------

class StakeRequest(BaseModel):
    user_id: int = Field(..., description="User starting the stake")
    wallet_address: str = Field(..., description="Wallet registered on the user's profile")
    package_id: int = Field(..., description="Staking package to pay for")


class StakeUserRequest(BaseModel):
    user_id: int


class ReferralRegisterRequest(BaseModel):
    child_user_id: int = Field(..., description="ID of the user being referred")
    referral_code: str = Field(..., description="Referral code used on signup")


class RewardQuoteRequest(BaseModel):
    stake_amount: Decimal
    daily_yield_percent: Decimal
    days: int = Field(..., ge=0)


# ---------
# dependencies (overridable in tests)
# ---------

@lru_cache
def get_backend() -> BackendClient:
    return BackendClient(get_settings())


def get_settings_lookup(backend: BackendClient = Depends(get_backend)) -> SettingsLookup:
    return SettingsLookup(backend, get_settings())


@lru_cache
def get_pending_store() -> PendingStakeStore:
    return PendingStakeStore(PostgresKeyValueStore())


@lru_cache
def get_wallet_gateway() -> Web3WalletGateway:
    return Web3WalletGateway.from_settings(get_settings())


def get_coordinator(
    gateway=Depends(get_wallet_gateway),
    store: PendingStakeStore = Depends(get_pending_store),
    backend=Depends(get_backend),
    settings_lookup=Depends(get_settings_lookup),
) -> StakeConfirmationCoordinator:
    settings = get_settings()
    return StakeConfirmationCoordinator(
        gateway,
        store,
        backend,
        settings_lookup,
        chain_id=settings.chain_id,
        token_address=settings.usdt_token_address,
        token_decimals=settings.usdt_decimals,
    )


def get_network_loader() -> Callable[[int], List[ReferralNode]]:
    return load_referral_network


def get_forest_loader() -> Callable[[], List[ReferralNode]]:
    return load_referral_forest


# ---------
# error mapping
# ---------

ERROR_STATUS = {
    WalletUnavailable: 503,
    WrongWallet: 400,
    ChainSwitchRejected: 400,
    UserRejectedTransfer: 400,
    InsufficientFunds: 400,
    TransferFailed: 502,
    TransferUnconfirmed: 504,
    StakeAlreadyPending: 409,
    NoPendingStake: 404,
    ConfirmationFailed: 502,
    IntentExpired: 410,
    IntentNotPersisted: 500,
}


@app.exception_handler(StakingError)
def staking_error_handler(request, exc: StakingError):
    status = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        400,
    )
    return JSONResponse(
        status_code=status,
        content={
            "detail": exc.message,
            "error": type(exc).__name__,
            "funds_moved": exc.funds_moved,
        },
    )


@app.exception_handler(BackendError)
def backend_error_handler(request, exc: BackendError):
    # confirmation failures arrive as ConfirmationFailed; anything here happened before a transfer
    logger.error(f"Backend call failed: {exc}")
    return JSONResponse(
        status_code=502,
        content={"detail": str(exc), "error": "BackendError", "funds_moved": False},
    )


# ---------
# helpers
# ---------

def fmt(v: Decimal) -> str:
    return f"{v:.6f}"


def _intent_out(intent: Optional[PendingStakeIntent]) -> Optional[Dict[str, Any]]:
    if intent is None:
        return None
    return {
        "tx_hash": intent.tx_hash,
        "package_id": intent.package_id,
        "user_id": intent.user_id,
        "package_name": intent.package_name,
        "amount": fmt(intent.amount),
        "timestamp": intent.created_at_ms,
    }


def _stats_out(stats: ReferralStats) -> Dict[str, Any]:
    return {
        "total_referrals": stats.total_referrals,
        "by_level": {
            str(level): {
                "count": bucket.count,
                "total_earnings": fmt(bucket.total_earnings),
                "commission_rate": str(rate_for_level(level)),
            }
            for level, bucket in stats.by_level.items()
        },
    }


# ---------
# staking endpoints
# ---------

@app.post("/api/staking/stake")
def staking_stake(
    payload: StakeRequest,
    coordinator: StakeConfirmationCoordinator = Depends(get_coordinator),
    backend=Depends(get_backend),
):
    """
    phase 1: pay for the package and persist the pending intent.
    a 2xx here means the money moved and the stake must now be confirmed.
    """
    try:
        package = backend.get_staking_package(payload.package_id)
    except (BackendError, KeyError, ValueError) as e:
        raise HTTPException(status_code=502, detail=f"Could not load package {payload.package_id}: {e}")

    try:
        intent = coordinator.start_stake(payload.user_id, payload.wallet_address, package)
    except ValueError as e:
        # bad amounts are caught before any wallet call
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "state": coordinator.state(payload.user_id).value,
        "intent": _intent_out(intent),
    }


@app.post("/api/staking/confirm")
def staking_confirm(
    payload: StakeUserRequest,
    coordinator: StakeConfirmationCoordinator = Depends(get_coordinator),
):
    """
    phase 2: have the backend record the stake. retry freely on failure.
    """
    return coordinator.confirm(payload.user_id)


@app.post("/api/staking/cancel")
def staking_cancel(
    payload: StakeUserRequest,
    coordinator: StakeConfirmationCoordinator = Depends(get_coordinator),
):
    intent = coordinator.cancel(payload.user_id)
    return {"state": "cancelled", "intent": _intent_out(intent)}


@app.get("/api/staking/pending")
def staking_pending(
    user_id: int = Query(..., description="User whose pending stake to look up"),
    coordinator: StakeConfirmationCoordinator = Depends(get_coordinator),
):
    result = coordinator.resume(user_id)
    return {
        "state": result["state"].value,
        "intent": _intent_out(result["intent"]),
        "advisory": result["advisory"],
    }


@app.post("/api/staking/rewards/quote")
def staking_rewards_quote(payload: RewardQuoteRequest):
    try:
        daily = daily_reward(payload.stake_amount, payload.daily_yield_percent)
        total = total_reward(payload.stake_amount, payload.daily_yield_percent, payload.days)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"daily_reward": fmt(daily), "total_reward": fmt(total), "days": payload.days}


@app.get("/api/staking/stats")
def staking_stats(
    user_id: int = Query(..., description="User whose dashboard totals to compute"),
    backend=Depends(get_backend),
):
    """
    staking and withdrawal totals recomputed from the backend's records.
    """
    stakings = backend.get_user_stakings(user_id)
    withdrawals = backend.get_user_withdrawals(user_id)

    stats = get_staking_stats(stakings)
    progress = stats.pop("staking_progress")
    response = {k: (fmt(v) if isinstance(v, Decimal) else v) for k, v in stats.items()}
    response["staking_progress"] = [
        {
            "id": p["id"],
            "unlock_date": p["unlock_date"],
            "progress_percentage": f"{p['progress_percentage']:.2f}",
            "daily_reward": fmt(p["daily_reward"]),
        }
        for p in progress
    ]
    response["withdrawals"] = {k: fmt(v) for k, v in get_withdrawal_stats(withdrawals).items()}
    return {"user_id": user_id, **response}


# ---------
# referral endpoints
# ---------

@app.post("/api/referral/register")
def referral_register(payload: ReferralRegisterRequest):
    """
    attach a child user to a referrer using a referral_code.
    """
    try:
        return register_referral_db(
            child_id=payload.child_user_id,
            referral_code=payload.referral_code,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("Referral registration failed")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/referral/stats")
def referral_stats(
    user_id: int = Query(..., description="Root user ID"),
    check_backend: bool = Query(False, description="Also compare with the backend's own aggregation"),
    loader=Depends(get_network_loader),
    backend=Depends(get_backend),
):
    """
    per-level referral counts / earnings for a user's downline (level 1 = direct).
    """
    try:
        nodes = loader(user_id)
    except Exception:
        logger.exception(f"Loading referral network for user {user_id} failed")
        raise HTTPException(status_code=500, detail="Internal server error")

    stats = aggregate_levels(nodes)
    response = {"user_id": user_id, **_stats_out(stats)}
    response["levels"] = {
        str(level): [u.get("id") for u in users] for level, users in users_by_level(nodes).items()
    }

    if check_backend:
        try:
            remote = backend.get_referral_tree(user_id)
        except BackendError as e:
            raise HTTPException(status_code=502, detail=str(e))
        mismatches = compare_with_backend(stats, remote)
        response["consistent"] = not mismatches
        response["mismatches"] = [
            {k: (fmt(v) if isinstance(v, Decimal) else v) for k, v in m.items()}
            for m in mismatches
        ]

    return response


@app.get("/api/referral/forest")
def referral_forest(loader=Depends(get_forest_loader)):
    """
    admin view: every referral tree, roots at level 0.
    """
    try:
        forest = loader()
    except Exception:
        logger.exception("Loading referral forest failed")
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"roots": len(forest), "forest": [node.model_dump(mode="json") for node in forest]}


@app.get("/api/commission/schedule")
def commission_schedule():
    return {"levels": {str(level): str(rate) for level, rate in DEFAULT_COMMISSION_RATES.items()}}


# ---------
# withdrawals
# ---------

@app.get("/api/withdrawal/quote")
def withdrawal_quote(
    amount: Decimal = Query(..., ge=0, description="Gross withdrawal amount"),
    settings_lookup=Depends(get_settings_lookup),
):
    """
    net payout after the current withdrawal fee.
    """
    try:
        fee_percent = settings_lookup.withdrawal_fee_percent()
    except BackendError as e:
        raise HTTPException(status_code=502, detail=str(e))

    try:
        fee = withdrawal_fee(amount, fee_percent)
        net = net_withdrawal(amount, fee_percent)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "gross": fmt(amount),
        "fee_percent": str(fee_percent),
        "fee": fmt(fee),
        "net": fmt(net),
    }
