from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from errors import (
    ChainSwitchRejected,
    InsufficientFunds,
    StakeAlreadyPending,
    TransferFailed,
    TransferUnconfirmed,
    UserRejectedTransfer,
    WalletUnavailable,
)
from stake_coordinator import StakeState
from wallet_gateway import Web3WalletGateway, same_address

PRIVATE_KEY = "0x" + "11" * 32
USDT = "0x55d398326f99059fF775485246999027B3197955"
PLATFORM = "0x9990000000000000000000000000000000000099"
TX_HASH = b"\x12" * 32


@pytest.fixture
def web3():
    w3 = MagicMock()
    w3.is_connected.return_value = True
    w3.eth.chain_id = 56
    w3.eth.get_transaction_count.return_value = 0
    w3.eth.send_raw_transaction.return_value = TX_HASH
    w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 5}

    token = w3.eth.contract.return_value
    token.functions.balanceOf.return_value.call.return_value = 100 * 10**18
    token.functions.decimals.return_value.call.return_value = 18
    token.functions.transfer.return_value.build_transaction.side_effect = lambda params: {
        "to": USDT,
        "value": 0,
        "gas": 60000,
        "gasPrice": 10**9,
        "nonce": params["nonce"],
        "chainId": params["chainId"],
        "data": "0x",
    }
    return w3


@pytest.fixture
def gateway(web3):
    return Web3WalletGateway(web3, PRIVATE_KEY, receipt_timeout=5)


def _token(web3):
    return web3.eth.contract.return_value


def test_same_address_ignores_case():
    assert same_address("0xAbC", "0xabc")
    assert not same_address("0xabc", None)
    assert not same_address("0xabc", "0xabd")


def test_connect_reports_mismatch(gateway):
    assert gateway.connect(gateway.address) == {"address": gateway.address, "mismatch": False}
    assert gateway.connect(PLATFORM)["mismatch"] is True


def test_connect_without_key_or_node(web3):
    with pytest.raises(WalletUnavailable):
        Web3WalletGateway(web3, None).connect()

    web3.is_connected.return_value = False
    with pytest.raises(WalletUnavailable):
        Web3WalletGateway(web3, PRIVATE_KEY).connect()


def test_ensure_chain(gateway, web3):
    gateway.ensure_chain(56)

    web3.eth.chain_id = 1
    with pytest.raises(ChainSwitchRejected):
        gateway.ensure_chain(56)


def test_submit_transfer_sends_base_units(gateway, web3):
    tx_hash = gateway.submit_transfer(USDT, PLATFORM, Decimal("10"), 18)

    assert tx_hash == "0x" + "12" * 32
    _token(web3).functions.transfer.assert_called_once_with(PLATFORM, 10 * 10**18)
    web3.eth.wait_for_transaction_receipt.assert_called_once_with(TX_HASH, timeout=5)


def test_submit_transfer_reads_decimals_when_not_given(gateway, web3):
    _token(web3).functions.decimals.return_value.call.return_value = 6

    gateway.submit_transfer(USDT, PLATFORM, Decimal("1.5"))

    _token(web3).functions.transfer.assert_called_once_with(PLATFORM, 1_500_000)


def test_low_token_balance(gateway, web3):
    _token(web3).functions.balanceOf.return_value.call.return_value = 10**18

    with pytest.raises(InsufficientFunds):
        gateway.submit_transfer(USDT, PLATFORM, Decimal("10"), 18)
    web3.eth.send_raw_transaction.assert_not_called()


def test_user_rejects_in_wallet(web3):
    prompts = []

    def reject(prompt):
        prompts.append(prompt)
        return False

    gateway = Web3WalletGateway(web3, PRIVATE_KEY, approve=reject)

    with pytest.raises(UserRejectedTransfer):
        gateway.submit_transfer(USDT, PLATFORM, Decimal("10"), 18)
    assert prompts[0]["amount"] == Decimal("10")
    web3.eth.send_raw_transaction.assert_not_called()


def test_not_enough_gas(gateway, web3):
    web3.eth.send_raw_transaction.side_effect = ValueError(
        {"code": -32000, "message": "insufficient funds for gas * price + value"}
    )

    with pytest.raises(InsufficientFunds):
        gateway.submit_transfer(USDT, PLATFORM, Decimal("10"), 18)


def test_contract_revert_on_submit(gateway, web3):
    _token(web3).functions.transfer.return_value.build_transaction.side_effect = ContractLogicError(
        "execution reverted: BEP20: transfer amount exceeds balance"
    )

    with pytest.raises(TransferFailed):
        gateway.submit_transfer(USDT, PLATFORM, Decimal("10"), 18)


def test_receipt_timeout_reports_broadcast_transfer(gateway, web3):
    """
    sent but not mined in time: the money may still move, so the hash comes back.
    """
    web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("timeout")

    with pytest.raises(TransferUnconfirmed) as exc:
        gateway.submit_transfer(USDT, PLATFORM, Decimal("10"), 18)

    assert exc.value.funds_moved is True
    assert exc.value.tx_hash == "0x" + "12" * 32


def test_receipt_lookup_error_reports_broadcast_transfer(gateway, web3):
    web3.eth.wait_for_transaction_receipt.side_effect = ConnectionError("node went away")

    with pytest.raises(TransferUnconfirmed) as exc:
        gateway.submit_transfer(USDT, PLATFORM, Decimal("10"), 18)

    assert exc.value.tx_hash == "0x" + "12" * 32


@pytest.mark.parametrize("call", ["decimals", "balanceOf"])
def test_token_read_errors_fail_before_sending(gateway, web3, call):
    getattr(_token(web3).functions, call).return_value.call.side_effect = Web3Exception("rpc down")

    with pytest.raises(TransferFailed) as exc:
        gateway.submit_transfer(USDT, PLATFORM, Decimal("10"))

    assert exc.value.funds_moved is False
    web3.eth.send_raw_transaction.assert_not_called()


def test_timeout_after_broadcast_is_recorded_for_confirmation(web3, store, backend, package, coordinator_factory):
    """
    wallet times out waiting for the receipt: the intent is kept and a
    second stake is refused instead of paying twice.
    """
    web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("timeout")
    gateway = Web3WalletGateway(web3, PRIVATE_KEY, receipt_timeout=5)
    coordinator = coordinator_factory(gateway, store, backend)

    with pytest.raises(TransferUnconfirmed) as exc:
        coordinator.start_stake(7, gateway.address, package)

    assert exc.value.funds_moved is True
    assert store.get(7).tx_hash == "0x" + "12" * 32
    assert coordinator.state(7) == StakeState.AWAITING_CONFIRMATION

    with pytest.raises(StakeAlreadyPending):
        coordinator.start_stake(7, gateway.address, package)
    assert web3.eth.send_raw_transaction.call_count == 1

    coordinator.confirm(7)
    assert backend.calls == [("0x" + "12" * 32, package.id, 7)]


def test_reverted_receipt(gateway, web3):
    web3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 5}

    with pytest.raises(TransferFailed, match="reverted"):
        gateway.submit_transfer(USDT, PLATFORM, Decimal("10"), 18)
