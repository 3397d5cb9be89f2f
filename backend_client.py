from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from config import Settings, get_settings
from models import Staking, StakingPackage, WithdrawalRequest


class BackendError(Exception):
    pass


class BackendClient:
    """
    client for the system of record (staking confirmation, referral queries,
    admin settings). one method per endpoint, no retries.
    """

    def __init__(self, settings: Optional[Settings] = None, http: Optional[httpx.Client] = None):
        self.settings = settings or get_settings()
        headers = {}
        if self.settings.backend_token:
            headers["Authorization"] = f"Bearer {self.settings.backend_token}"
        self.http = http or httpx.Client(
            base_url=self.settings.backend_url,
            headers=headers,
            timeout=self.settings.http_timeout_seconds,
        )

    def close(self) -> None:
        self.http.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            res = self.http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {path} failed: {e}") from e

        try:
            body = res.json()
        except ValueError:
            body = {}

        if res.status_code >= 400:
            message = body.get("message") if isinstance(body, dict) else None
            raise BackendError(message or f"{method} {path} returned {res.status_code}")
        return body

    # ---------
    # staking
    # ---------

    def confirm_staking(self, tx_hash: str, package_id: int, user_id: int) -> Dict[str, Any]:
        """
        ask the backend to record the stake paid by `tx_hash`.
        the backend dedupes on tx_hash, so repeating this call is safe.

        returns {"success": bool, "message": str | None}
        """
        body = self._request(
            "POST",
            "/staking/create",
            json={"package_id": package_id, "payment_tx_hash": tx_hash, "user_id": user_id},
        )
        return {"success": bool(body.get("success")), "message": body.get("message")}

    def get_staking_package(self, package_id: int) -> StakingPackage:
        body = self._request("GET", f"/staking/packages/{package_id}")
        row = body.get("data", body)
        return StakingPackage(
            id=row["id"],
            name=row["name"],
            stake_amount=Decimal(str(row["stake_amount"])),
            daily_yield_percent=Decimal(str(row.get("daily_yield_percentage", 0))),
            lock_period_days=int(row.get("lock_period_days") or 0),
        )

    def get_user_stakings(self, user_id: int) -> List[Staking]:
        body = self._request("GET", "/users/stakings", params={"user_id": user_id})
        data = body.get("data", body)
        rows = data.get("stakings", []) if isinstance(data, dict) else data
        stakings = []
        for row in rows:
            package = row.get("package") or {}
            stakings.append(
                Staking(
                    id=row["id"],
                    user_id=row.get("user_id", user_id),
                    package_id=row.get("package_id", package.get("id", 0)),
                    stake_amount=Decimal(str(package.get("stake_amount", 0))),
                    status=row["status"],
                    start_date=row.get("createdAt") or row["created_at"],
                    daily_yield_percent=Decimal(str(package.get("daily_yield_percentage", 0))),
                    lock_period_days=int(package.get("lock_period_days") or 0),
                )
            )
        return stakings

    def get_user_withdrawals(self, user_id: int) -> List[WithdrawalRequest]:
        body = self._request("GET", "/withdrawals", params={"user_id": user_id})
        data = body.get("data", body)
        rows = data.get("withdrawals", []) if isinstance(data, dict) else data
        return [
            WithdrawalRequest(
                id=row["id"],
                amount=Decimal(str(row["amount"])),
                status=row["status"],
                fee_percent=Decimal(str(row.get("fee_percentage", 0))),
            )
            for row in rows
        ]

    # ---------
    # referrals
    # ---------

    def get_referral_tree(self, user_id: int) -> Dict[str, Any]:
        """
        {"overall": {...}, "by_level": {level: {...}}, "recent_referrals": [...]}
        """
        body = self._request("GET", "/referrals/tree", params={"user_id": user_id})
        return body.get("data", body)

    def get_referral_rewards(self, user_id: int, page: int = 1) -> List[Dict[str, Any]]:
        body = self._request("GET", "/referrals/rewards", params={"user_id": user_id, "page": page})
        data = body.get("data", body)
        return data.get("transactions", [])

    # ---------
    # admin settings
    # ---------

    def get_admin_settings(self) -> Dict[str, str]:
        body = self._request("GET", "/admin-settings")
        rows = body.get("data", body)
        if isinstance(rows, dict):
            return {k: str(v) for k, v in rows.items()}
        return {row["title"]: str(row["value"]) for row in rows}

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.get_admin_settings().get(key)
        if value is None:
            logger.debug(f"Admin setting {key} not set, using default {default}")
            return default
        return value


class SettingsLookup:
    """
    read-only view over the admin settings with typed accessors and
    configured fallbacks.
    """

    def __init__(self, backend: BackendClient, settings: Optional[Settings] = None):
        self.backend = backend
        self.settings = settings or get_settings()

    def _decimal(self, key: str, default: Decimal) -> Decimal:
        value = self.backend.get_setting(key)
        if not value:
            return default
        try:
            return Decimal(value)
        except InvalidOperation as e:
            raise BackendError(f"Admin setting {key} is not a number: {value!r}") from e

    def token_price(self) -> Decimal:
        price = self._decimal("token_price", self.settings.default_token_price)
        if price <= 0:
            raise BackendError(f"Admin setting token_price must be positive, got {price}")
        return price

    def withdrawal_fee_percent(self) -> Decimal:
        return self._decimal("withdrawal_fee_percentage", self.settings.default_withdrawal_fee_percent)

    def platform_wallet_address(self) -> str:
        value = self.backend.get_setting("platform_wallet_address")
        if not value:
            raise BackendError("platform_wallet_address is not configured")
        return value
