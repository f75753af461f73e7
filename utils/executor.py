import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from eth_utils import is_hex
from web3 import Web3

import config
from .errors import ExecutionError, LedgerQueryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SwapReceipt:
    tx_hash: str
    block_number: int
    confirmations: int
    success: bool
    gas_used: int
    gas_limit: int


def gas_limit_with_headroom(base: int, percent: int = config.GAS_HEADROOM_PERCENT) -> int:
    """ceil(base * percent / 100) in integer arithmetic."""
    return -(-int(base) * percent // 100)


class SwapExecutor:
    """
    Sends a quoted swap to the Universal Router.

    Nothing is broadcast until the quote has calldata, is still fresh, matches
    the requested input and the router address holds contract code.
    """

    def __init__(self, ledger, router_address: str, default_gas_limit: int = config.DEFAULT_GAS_LIMIT,
                 clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.router_address = Web3.to_checksum_address(router_address)
        self.default_gas_limit = default_gas_limit
        self.clock = clock

    def _fail(self, message: str, phase: str, token, amount) -> ExecutionError:
        return ExecutionError(message, phase=phase, token=token.symbol, amount=amount)

    def validate(self, quote, token_in, amount_in: int) -> None:
        if not quote.calldata or quote.calldata in ("0x", "0X"):
            raise self._fail("Quote has no calldata", "validate", token_in, amount_in)
        if not quote.calldata.startswith('0x') or not is_hex(quote.calldata):
            raise self._fail("Quote calldata is not 0x-prefixed hex", "validate", token_in, amount_in)
        if amount_in <= 0:
            raise self._fail("Swap amount must be positive", "validate", token_in, amount_in)
        if quote.input_token.address != token_in.address or quote.input_amount != amount_in:
            raise self._fail(
                f"Quote is for {quote.input_token.format(quote.input_amount)}, not {token_in.format(amount_in)}",
                "validate", token_in, amount_in,
            )
        if quote.is_stale(self.clock()):
            raise self._fail("Quote is stale; fetch a new one", "validate", token_in, amount_in)
        if quote.target and Web3.to_checksum_address(quote.target) != self.router_address:
            raise self._fail(
                f"Quote targets {quote.target} but the configured router is {self.router_address}",
                "validate", token_in, amount_in,
            )

    def ensure_router_deployed(self, token_in, amount_in: int) -> None:
        try:
            deployed = self.ledger.has_code(self.router_address)
        except LedgerQueryError as e:
            raise self._fail(f"Could not read router code: {e}", "validate", token_in, amount_in) from e
        if not deployed:
            raise self._fail(f"No contract found at Universal Router address {self.router_address}",
                             "validate", token_in, amount_in)
        logger.debug("Universal Router contract found at %s", self.router_address)

    def gas_limit_for(self, tx) -> int:
        try:
            base = self.ledger.estimate_gas(tx)
        except Exception as e:
            logger.warning("Gas estimation failed (%s); using default limit %s", e, self.default_gas_limit)
            base = self.default_gas_limit
        return gas_limit_with_headroom(base)

    def execute(self, quote, token_in, amount_in: int) -> SwapReceipt:
        self.validate(quote, token_in, amount_in)
        self.ensure_router_deployed(token_in, amount_in)

        tx = {
            'from': self.ledger.signer.address,
            'to': self.router_address,
            'data': quote.calldata,
            'value': int(quote.value),
        }
        gas_limit = self.gas_limit_for(tx)

        try:
            tx_hash = self.ledger.send_transaction({**tx, 'gas': gas_limit})
        except Exception as e:
            raise self._fail(f"Swap submission failed: {e}", "submit", token_in, amount_in) from e
        tx_hex = Web3.to_hex(tx_hash)
        logger.info("Swap transaction sent: %s (gas limit %s)", tx_hex, gas_limit)

        try:
            receipt, depth = self.ledger.wait_for_confirmations(tx_hash)
        except Exception as e:
            raise self._fail(f"Swap {tx_hex} not confirmed: {e}", "confirm", token_in, amount_in) from e

        if receipt['status'] != 1:
            raise self._fail(f"Swap {tx_hex} reverted in block {receipt['blockNumber']}",
                             "confirm", token_in, amount_in)

        logger.info("Swap confirmed: %s", tx_hex)
        return SwapReceipt(
            tx_hash=tx_hex,
            block_number=int(receipt['blockNumber']),
            confirmations=depth,
            success=True,
            gas_used=int(receipt.get('gasUsed', 0)),
            gas_limit=gas_limit,
        )
