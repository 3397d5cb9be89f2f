from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from eth_account import Account
from loguru import logger
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from errors import (
    ChainSwitchRejected,
    InsufficientFunds,
    TransferFailed,
    TransferUnconfirmed,
    UserRejectedTransfer,
    WalletUnavailable,
)
from fee_engine import to_base_units

# node / transport failures; requests' errors are OSErrors
RPC_ERRORS = (Web3Exception, ValueError, OSError)

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()


class WalletGateway(ABC):
    """
    what the staking flow needs from a wallet. every call may block on a human
    or on block inclusion; none of them retries.
    """

    @abstractmethod
    def connect(self, expected_address: Optional[str] = None) -> Dict[str, Any]:
        """
        returns {"address": connected, "mismatch": bool}.
        a mismatch is reported, not raised; the caller decides.
        """

    @abstractmethod
    def current_chain(self) -> int:
        ...

    @abstractmethod
    def ensure_chain(self, expected: int) -> None:
        ...

    @abstractmethod
    def submit_transfer(self, token_address: str, to: str, amount: Decimal, decimals: Optional[int] = None) -> str:
        """
        send `amount` tokens to `to` and wait until mined. returns the tx hash.
        raises TransferUnconfirmed (carrying the hash) when it was broadcast
        but the outcome is unknown.
        """


class Web3WalletGateway(WalletGateway):
    """
    gateway over a JSON-RPC node and a locally held signing key.

    approve: optional callback shown the pending transfer; returning False
    is treated as the user rejecting it in the wallet.
    """

    def __init__(
        self,
        web3: Web3,
        private_key: Optional[str],
        receipt_timeout: int = 180,
        approve: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ):
        self.web3 = web3
        self._account = Account.from_key(private_key) if private_key else None
        self.receipt_timeout = receipt_timeout
        self.approve = approve

    @classmethod
    def from_settings(cls, settings, approve=None) -> "Web3WalletGateway":
        web3 = Web3(Web3.HTTPProvider(settings.rpc_url, request_kwargs={"timeout": settings.http_timeout_seconds}))
        return cls(
            web3,
            settings.signer_private_key,
            receipt_timeout=settings.receipt_timeout_seconds,
            approve=approve,
        )

    @property
    def address(self) -> str:
        if self._account is None:
            raise WalletUnavailable("No signing key configured")
        return self._account.address

    def connect(self, expected_address: Optional[str] = None) -> Dict[str, Any]:
        address = self.address
        if not self.web3.is_connected():
            raise WalletUnavailable("RPC node is not reachable")

        mismatch = expected_address is not None and not same_address(address, expected_address)
        if mismatch:
            logger.warning(f"Connected wallet {address} differs from expected {expected_address}")
        return {"address": address, "mismatch": mismatch}

    def current_chain(self) -> int:
        return int(self.web3.eth.chain_id)

    def ensure_chain(self, expected: int) -> None:
        # an RPC endpoint serves exactly one chain; there is nothing to switch to
        current = self.current_chain()
        if current != expected:
            raise ChainSwitchRejected(expected, current)

    def submit_transfer(self, token_address: str, to: str, amount: Decimal, decimals: Optional[int] = None) -> str:
        sender = self.address
        recipient = Web3.to_checksum_address(to)

        try:
            token = self.web3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
            if decimals is None:
                decimals = token.functions.decimals().call()
            amount_units = to_base_units(amount, decimals)
            balance = token.functions.balanceOf(sender).call()
        except RPC_ERRORS as e:
            raise TransferFailed(f"Could not read token state: {e}") from e

        if balance < amount_units:
            raise InsufficientFunds(
                f"Token balance {balance} is below transfer amount {amount_units}"
            )

        if self.approve is not None:
            prompt = {"token": token_address, "to": recipient, "amount": amount, "from": sender}
            if not self.approve(prompt):
                raise UserRejectedTransfer("Transfer rejected in wallet")

        try:
            tx = token.functions.transfer(recipient, amount_units).build_transaction(
                {
                    "from": sender,
                    "nonce": self.web3.eth.get_transaction_count(sender, "pending"),
                    "chainId": self.current_chain(),
                }
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            raise TransferFailed(f"Token contract rejected transfer: {e}") from e
        except RPC_ERRORS as e:
            if "insufficient funds" in str(e).lower():
                raise InsufficientFunds("Not enough native balance to pay gas") from e
            raise TransferFailed(f"Could not submit transfer: {e}") from e

        tx_hex = Web3.to_hex(tx_hash)
        logger.info(f"Transfer {tx_hex} submitted: {amount} tokens -> {recipient}")

        # broadcast: from here on the transfer may be mined whatever the node says
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            logger.warning(f"Transfer {tx_hex} not mined within {self.receipt_timeout}s")
            raise TransferUnconfirmed(tx_hex, f"not mined within {self.receipt_timeout}s") from e
        except RPC_ERRORS as e:
            logger.warning(f"Lost track of transfer {tx_hex}: {e}")
            raise TransferUnconfirmed(tx_hex, f"receipt lookup failed: {e}") from e

        if receipt["status"] != 1:
            raise TransferFailed(f"Transfer {tx_hex} reverted")

        logger.success(f"Transfer {tx_hex} mined in block {receipt['blockNumber']}")
        return tx_hex
