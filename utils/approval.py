import logging
from dataclasses import dataclass
from typing import Any, Optional

from web3 import Web3

import config
from .errors import ApprovalError

logger = logging.getLogger(__name__)

SUFFICIENT = "sufficient"
APPROVED = "approved"
FAILED = "failed"


@dataclass(frozen=True)
class ApprovalResult:
    status: str
    allowance_before: int
    receipt: Optional[Any] = None
    tx_hash: Optional[str] = None
    error: Optional[ApprovalError] = None

    @property
    def ok(self) -> bool:
        return self.status != FAILED

    @property
    def submitted(self) -> bool:
        return self.tx_hash is not None


class ApprovalManager:
    """
    Makes sure `spender` may pull at least `min_amount` of a token from the
    owner. When it may not, approves the maximum uint256 once so later swaps
    never need another approval transaction.
    """

    def __init__(self, ledger, approval_amount: int = config.MAX_UINT256):
        self.ledger = ledger
        self.approval_amount = approval_amount

    def ensure_allowance(self, token, owner: str, spender: str, min_amount: int) -> ApprovalResult:
        if min_amount < 0 or min_amount > self.approval_amount:
            raise ValueError(f"min_amount must be within [0, {self.approval_amount}], got {min_amount}")

        # LedgerQueryError propagates; the caller decides whether to abort
        allowance = self.ledger.get_allowance(token, owner, spender)
        if allowance >= min_amount:
            logger.info("%s allowance for %s is sufficient (%s >= %s)", token.symbol, spender, allowance, min_amount)
            return ApprovalResult(status=SUFFICIENT, allowance_before=allowance)

        logger.info("Approving %s for %s (current allowance %s)", token.symbol, spender, allowance)
        try:
            tx_hash = self.ledger.send_approval(token, spender, self.approval_amount)
        except Exception as e:
            return self._failed(token, allowance, f"approval submission failed: {e}", cause=e)

        tx_hex = Web3.to_hex(tx_hash)
        logger.info("Approval transaction sent: %s", tx_hex)
        try:
            receipt, depth = self.ledger.wait_for_confirmations(tx_hash)
        except Exception as e:
            return self._failed(token, allowance, f"approval {tx_hex} not confirmed: {e}", tx_hash=tx_hex, cause=e)

        if receipt['status'] != 1:
            return self._failed(token, allowance, f"approval {tx_hex} reverted", tx_hash=tx_hex, receipt=receipt)

        logger.info("Approval confirmed: %s (%s confirmations)", tx_hex, depth)
        return ApprovalResult(status=APPROVED, allowance_before=allowance, receipt=receipt, tx_hash=tx_hex)

    def _failed(self, token, allowance, message, tx_hash=None, receipt=None, cause=None) -> ApprovalResult:
        error = ApprovalError(message, phase="ensure_approval", token=token.symbol)
        error.__cause__ = cause
        logger.error("%s", error)
        return ApprovalResult(status=FAILED, allowance_before=allowance, receipt=receipt,
                              tx_hash=tx_hash, error=error)
