"""
error taxonomy for the staking flow.

every error carries `funds_moved`:
  - False: nothing durable happened, the user can simply try again
  - True:  the on-chain transfer went through, the user must confirm / follow up
"""


class StakingError(Exception):
    funds_moved = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ---------
# wallet / transfer (nothing persisted, flow returns to idle)
# ---------

class WalletUnavailable(StakingError):
    pass


class WrongWallet(StakingError):
    def __init__(self, expected: str, connected: str):
        super().__init__(
            f"Connected wallet {connected} does not match expected wallet {expected}."
        )
        self.expected = expected
        self.connected = connected


class ChainSwitchRejected(StakingError):
    def __init__(self, expected: int, current: int):
        super().__init__(f"Wallet is on chain {current}, expected chain {expected}.")
        self.expected = expected
        self.current = current


WrongChain = ChainSwitchRejected


class UserRejectedTransfer(StakingError):
    pass


class InsufficientFunds(StakingError):
    pass


class TransferFailed(StakingError):
    pass


class StakeAlreadyPending(StakingError):
    """
    a previous transfer is still waiting for confirmation.
    starting another one would orphan the first transfer's local record.
    """

    def __init__(self, user_id, tx_hash: str):
        super().__init__(
            f"User {user_id} has an unconfirmed stake (tx {tx_hash}); confirm or cancel it first."
        )
        self.user_id = user_id
        self.tx_hash = tx_hash


class NoPendingStake(StakingError):
    pass


# ---------
# post-transfer (money moved)
# ---------

class ConfirmationFailed(StakingError):
    funds_moved = True


class IntentExpired(StakingError):
    funds_moved = True


class TransferUnconfirmed(StakingError):
    """
    the transfer was broadcast but no receipt came back (timeout or node error).
    it may still be mined, so it is tracked like a completed transfer.
    """

    funds_moved = True

    def __init__(self, tx_hash: str, reason: str):
        super().__init__(
            f"Transfer {tx_hash} was sent but not confirmed yet ({reason}); "
            f"confirm the stake once it is mined."
        )
        self.tx_hash = tx_hash


# ---------
# referral graph
# ---------

class MalformedRelationshipGraph(Exception):
    """
    cycle or over-deep chain found while building a referral tree.
    the builder logs it and keeps going; it is raised only by strict callers.
    """


class IntentNotPersisted(StakingError):
    """
    the transfer was mined but the local record could not be written.
    only the tx hash in the message / logs links the payment to the user now.
    """

    funds_moved = True

    def __init__(self, tx_hash: str, reason: str):
        super().__init__(f"Transfer {tx_hash} succeeded but could not be saved locally: {reason}")
        self.tx_hash = tx_hash
