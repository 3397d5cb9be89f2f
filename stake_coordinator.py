import threading
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger

from backend_client import BackendError
from errors import (
    ConfirmationFailed,
    IntentExpired,
    IntentNotPersisted,
    NoPendingStake,
    StakeAlreadyPending,
    TransferUnconfirmed,
    WrongWallet,
)
from fee_engine import stake_payment_amount
from models import PendingStakeIntent, StakingPackage
from pending_store import PendingStakeStore
from wallet_gateway import WalletGateway

EXPIRED_ADVISORY = (
    "Your last staking payment was not confirmed within 24 hours and is no longer "
    "tracked here. If the transfer left your wallet, contact support with the "
    "transaction hash so it can be matched manually."
)


class StakeState(str, Enum):
    IDLE = "idle"
    WALLET_PENDING = "wallet_pending"
    TRANSFER_PENDING = "transfer_pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class StakeConfirmationCoordinator:
    """
    two-phase staking:

      1) start_stake: wallet checks -> token transfer -> durable pending intent
      2) confirm:     pending intent -> backend records the stake -> intent cleared

    the pending intent is the only link between "money moved" and
    "ledger updated", so it is written before start_stake returns and is
    kept until the backend accepts it.

    collaborators:
      gateway:  WalletGateway
      store:    PendingStakeStore
      backend:  anything with confirm_staking(tx_hash, package_id, user_id)
      settings_lookup: anything with token_price() and platform_wallet_address()
    """

    def __init__(
        self,
        gateway: WalletGateway,
        store: PendingStakeStore,
        backend,
        settings_lookup,
        chain_id: int,
        token_address: str,
        token_decimals: Optional[int] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.backend = backend
        self.settings_lookup = settings_lookup
        self.chain_id = chain_id
        self.token_address = token_address
        self.token_decimals = token_decimals

        self._states: Dict[Any, StakeState] = {}
        self._lock = threading.Lock()

    # ---------
    # state bookkeeping
    # ---------

    def _set_state(self, user_id, state: StakeState) -> None:
        with self._lock:
            previous = self._states.get(user_id, StakeState.IDLE)
            self._states[user_id] = state
        if previous != state:
            logger.info(f"User {user_id}: {previous.value} -> {state.value}")

    def state(self, user_id) -> StakeState:
        with self._lock:
            current = self._states.get(user_id)
        if current in (StakeState.WALLET_PENDING, StakeState.TRANSFER_PENDING):
            return current
        if self.store.get(user_id) is not None:
            return StakeState.AWAITING_CONFIRMATION
        return current or StakeState.IDLE

    # ---------
    # phase 1
    # ---------

    def start_stake(self, user_id, wallet_address: str, package: StakingPackage) -> PendingStakeIntent:
        """
        pay for `package` from the user's wallet and persist the pending intent.

        raises (nothing persisted, state back to idle):
          StakeAlreadyPending, WalletUnavailable, WrongWallet,
          ChainSwitchRejected, UserRejectedTransfer, InsufficientFunds, TransferFailed
        raises IntentNotPersisted if the transfer went through but the record
        could not be written. raises TransferUnconfirmed after recording the
        intent when the transfer was broadcast but not seen mined.
        """
        existing = self.store.get(user_id)
        if existing is not None:
            raise StakeAlreadyPending(user_id, existing.tx_hash)

        self._set_state(user_id, StakeState.WALLET_PENDING)
        transferred = False
        unconfirmed = None
        try:
            connection = self.gateway.connect(wallet_address)
            if connection["mismatch"]:
                raise WrongWallet(wallet_address, connection["address"])

            self._set_state(user_id, StakeState.TRANSFER_PENDING)
            self.gateway.ensure_chain(self.chain_id)

            amount = stake_payment_amount(package.stake_amount, self.settings_lookup.token_price())
            receiver = self.settings_lookup.platform_wallet_address()
            logger.info(
                f"User {user_id} staking package {package.id} ({package.name}): {amount} USDT -> {receiver}"
            )
            try:
                tx_hash = self.gateway.submit_transfer(
                    self.token_address, receiver, amount, self.token_decimals
                )
            except TransferUnconfirmed as e:
                tx_hash = e.tx_hash
                unconfirmed = e
            transferred = True
        finally:
            # covers wallet errors and an abandoned call alike
            if not transferred:
                self._set_state(user_id, StakeState.IDLE)

        intent = self._record_intent(user_id, package, amount, tx_hash)

        self._set_state(user_id, StakeState.AWAITING_CONFIRMATION)
        if unconfirmed is not None:
            logger.warning(f"Stake payment {tx_hash} for user {user_id} recorded before it was mined")
            raise unconfirmed
        logger.success(f"Stake payment {tx_hash} for user {user_id} recorded; awaiting confirmation")
        return intent

    def _record_intent(self, user_id, package: StakingPackage, amount, tx_hash: str) -> PendingStakeIntent:
        try:
            intent = PendingStakeIntent(
                tx_hash=tx_hash,
                package_id=package.id,
                user_id=user_id,
                package_name=package.name,
                amount=amount,
                created_at_ms=self.store.clock(),
            )
            self.store.put(user_id, intent)
        except Exception as e:
            logger.critical(
                f"Transfer {tx_hash} for user {user_id} (package {package.id}, {amount} USDT) "
                f"sent but pending record not saved: {e}"
            )
            self._set_state(user_id, StakeState.IDLE)
            raise IntentNotPersisted(tx_hash, str(e)) from e
        return intent

    # ---------
    # phase 2
    # ---------

    def confirm(self, user_id) -> Dict[str, Any]:
        """
        hand the pending intent to the backend. safe to call repeatedly:
        the intent is only cleared after the backend accepts it.
        """
        intent, expired = self.store.lookup(user_id)
        if intent is None:
            if expired:
                self._set_state(user_id, StakeState.EXPIRED)
                raise IntentExpired(EXPIRED_ADVISORY)
            raise NoPendingStake(f"User {user_id} has no stake awaiting confirmation.")

        try:
            result = self.backend.confirm_staking(intent.tx_hash, intent.package_id, intent.user_id)
        except BackendError as e:
            logger.error(f"Confirmation of {intent.tx_hash} for user {user_id} failed: {e}")
            raise ConfirmationFailed(str(e)) from e

        if not result.get("success"):
            message = result.get("message") or "Staking confirmation was rejected."
            logger.error(f"Backend rejected confirmation of {intent.tx_hash} for user {user_id}: {message}")
            raise ConfirmationFailed(message)

        self.store.clear(user_id)
        self._set_state(user_id, StakeState.CONFIRMED)
        logger.success(f"Stake {intent.tx_hash} confirmed for user {user_id}")
        return {
            "status": StakeState.CONFIRMED.value,
            "tx_hash": intent.tx_hash,
            "package_id": intent.package_id,
            "message": result.get("message"),
        }

    def resume(self, user_id) -> Dict[str, Any]:
        """
        session start: pick up whatever the previous session left behind.
        """
        intent, expired = self.store.lookup(user_id)
        if intent is not None:
            self._set_state(user_id, StakeState.AWAITING_CONFIRMATION)
            return {"state": StakeState.AWAITING_CONFIRMATION, "intent": intent, "advisory": None}
        if expired:
            self._set_state(user_id, StakeState.EXPIRED)
            return {"state": StakeState.EXPIRED, "intent": None, "advisory": EXPIRED_ADVISORY}
        return {"state": self.state(user_id), "intent": None, "advisory": None}

    def cancel(self, user_id) -> Optional[PendingStakeIntent]:
        """
        drop the local pending record. the on-chain transfer is not undone.
        """
        intent = self.store.get(user_id)
        if intent is None:
            raise NoPendingStake(f"User {user_id} has no stake awaiting confirmation.")
        self.store.clear(user_id)
        self._set_state(user_id, StakeState.CANCELLED)
        logger.warning(f"User {user_id} discarded pending stake {intent.tx_hash}")
        return intent
