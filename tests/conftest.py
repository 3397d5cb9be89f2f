from decimal import Decimal

import pytest

from backend_client import BackendError, SettingsLookup
from config import Settings
from errors import ChainSwitchRejected
from kv_store import InMemoryKeyValueStore
from models import StakingPackage
from pending_store import PendingStakeStore
from stake_coordinator import StakeConfirmationCoordinator
from wallet_gateway import WalletGateway, same_address

USER_WALLET = "0xAbC0000000000000000000000000000000000001"
OTHER_WALLET = "0xdef0000000000000000000000000000000000002"
PLATFORM_WALLET = "0x9990000000000000000000000000000000000099"
USDT = "0x55d398326f99059fF775485246999027B3197955"
BSC = 56
T0 = 1_700_000_000_000


class FakeClock:
    def __init__(self, start_ms=T0):
        self.now = start_ms

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeWallet(WalletGateway):
    """
    scripted wallet: records every call, fails on demand.
    """

    def __init__(self, address=USER_WALLET, chain=BSC):
        self.address = address
        self.chain = chain
        self.transfers = []
        self.fail_with = None
        self.tx_counter = 0

    def connect(self, expected_address=None):
        mismatch = expected_address is not None and not same_address(self.address, expected_address)
        return {"address": self.address, "mismatch": mismatch}

    def current_chain(self):
        return self.chain

    def ensure_chain(self, expected):
        if self.chain != expected:
            raise ChainSwitchRejected(expected, self.chain)

    def submit_transfer(self, token_address, to, amount, decimals=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.tx_counter += 1
        tx_hash = "0x" + f"{self.tx_counter:064x}"
        self.transfers.append({"token": token_address, "to": to, "amount": amount, "tx_hash": tx_hash})
        return tx_hash


class FakeBackend:
    """
    backend double that dedupes confirmations on tx_hash like the real one.
    """

    def __init__(self):
        self.calls = []
        self.stakings = {}
        self.fail_next = 0
        self.reject_with = None
        self.settings = {
            "token_price": "0.01",
            "platform_wallet_address": PLATFORM_WALLET,
            "withdrawal_fee_percentage": "10",
        }
        self.packages = {
            1: StakingPackage(
                id=1,
                name="Starter",
                stake_amount=Decimal("1000"),
                daily_yield_percent=Decimal("0.5"),
                lock_period_days=365,
            )
        }
        self.referral_tree = {}
        self.user_stakings = []
        self.user_withdrawals = []

    def confirm_staking(self, tx_hash, package_id, user_id):
        self.calls.append((tx_hash, package_id, user_id))
        if self.fail_next:
            self.fail_next -= 1
            raise BackendError("backend unavailable")
        if self.reject_with is not None:
            return {"success": False, "message": self.reject_with}
        self.stakings.setdefault(
            tx_hash, {"user_id": user_id, "package_id": package_id, "status": "active"}
        )
        return {"success": True, "message": "Staking started successfully!"}

    def get_staking_package(self, package_id):
        if package_id not in self.packages:
            raise BackendError(f"Package {package_id} not found")
        return self.packages[package_id]

    def get_user_stakings(self, user_id):
        return self.user_stakings

    def get_user_withdrawals(self, user_id):
        return self.user_withdrawals

    def get_referral_tree(self, user_id):
        return self.referral_tree

    def get_setting(self, key, default=None):
        return self.settings.get(key, default)


class FakeSettingsLookup(SettingsLookup):
    """
    the real typed accessors over FakeBackend's settings dict.
    """

    def __init__(self, backend):
        super().__init__(backend, Settings())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def store(kv, clock):
    return PendingStakeStore(kv, clock=clock)


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def package(backend):
    return backend.packages[1]


def make_coordinator(wallet, store, backend):
    return StakeConfirmationCoordinator(
        wallet,
        store,
        backend,
        FakeSettingsLookup(backend),
        chain_id=BSC,
        token_address=USDT,
        token_decimals=18,
    )


@pytest.fixture
def coordinator(wallet, store, backend):
    return make_coordinator(wallet, store, backend)


@pytest.fixture
def coordinator_factory():
    return make_coordinator
