import json
import logging
import time
from typing import Any, Dict, Optional, Tuple, Union

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound

import config
from .errors import LedgerQueryError
from .rpc_provider import RotatingHTTPProvider

logger = logging.getLogger(__name__)

TokenLike = Union[str, Any]


def _address_of(token: TokenLike) -> str:
    return getattr(token, "address", token)


def _symbol_of(token: TokenLike) -> str:
    return getattr(token, "symbol", None) or str(token)


class LedgerClient:
    """
    Chain access for the swap runner: ERC-20/Permit2 reads, contract code
    lookups, gas estimation, signed submission and confirmation waits.

    Reads are never cached; every call goes to the node. Read failures are
    re-raised as LedgerQueryError with the token/owner/spender involved.
    """

    def __init__(self, swap_config, signer, w3: Optional[Web3] = None):
        self.cfg = swap_config
        self.signer = signer
        # None for read-only configs that do not pin a chain
        self.chain_id = swap_config.chain_id
        if w3 is None:
            self.provider = RotatingHTTPProvider(list(swap_config.rpc_urls))
            logger.info("Using RPC %s (%d endpoint(s) in rotation)", self.provider.current_url, len(self.provider.urls))
            w3 = Web3(self.provider)
        else:
            self.provider = getattr(w3, "provider", None)
        self.w3 = w3
        self.erc20_abi = json.loads(config.ERC20_ABI)
        self.permit2_abi = json.loads(config.PERMIT2_ABI)

    # ---------- Contracts ----------
    def _erc20(self, token_address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=self.erc20_abi)

    def _permit2(self):
        return self.w3.eth.contract(address=Web3.to_checksum_address(self.cfg.permit2_address), abi=self.permit2_abi)

    # ---------- Reads ----------
    def get_balance(self, token: TokenLike, owner: str) -> int:
        try:
            c = self._erc20(_address_of(token))
            return int(c.functions.balanceOf(Web3.to_checksum_address(owner)).call())
        except Exception as e:
            raise LedgerQueryError(
                f"balanceOf({owner}) failed: {e}", phase="balance", token=_symbol_of(token)
            ) from e

    def get_allowance(self, token: TokenLike, owner: str, spender: str) -> int:
        try:
            c = self._erc20(_address_of(token))
            return int(c.functions.allowance(
                Web3.to_checksum_address(owner),
                Web3.to_checksum_address(spender),
            ).call())
        except Exception as e:
            raise LedgerQueryError(
                f"allowance({owner}, {spender}) failed: {e}", phase="allowance", token=_symbol_of(token)
            ) from e

    def get_permit2_nonce(self, owner: str, token: TokenLike, spender: str) -> int:
        """Next Permit2 nonce for (owner, token, spender); allowance() returns (amount, expiration, nonce)."""
        try:
            packed = self._permit2().functions.allowance(
                Web3.to_checksum_address(owner),
                Web3.to_checksum_address(_address_of(token)),
                Web3.to_checksum_address(spender),
            ).call()
            return int(packed[2])
        except Exception as e:
            raise LedgerQueryError(
                f"Permit2 allowance({owner}, {spender}) failed: {e}", phase="permit_nonce", token=_symbol_of(token)
            ) from e

    def get_code(self, address: str) -> bytes:
        try:
            return bytes(self.w3.eth.get_code(Web3.to_checksum_address(address)))
        except Exception as e:
            raise LedgerQueryError(f"eth_getCode({address}) failed: {e}", phase="code") from e

    def get_chain_id(self) -> int:
        try:
            return int(self.w3.eth.chain_id)
        except Exception as e:
            raise LedgerQueryError(f"eth_chainId failed: {e}", phase="chain_id") from e

    def has_code(self, address: str) -> bool:
        return len(self.get_code(address)) > 0

    # ---------- Gas ----------
    def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return int(self.w3.eth.estimate_gas(tx))

    def suggested_fees(self) -> Dict[str, int]:
        """EIP-1559 fields from the latest block, or a legacy gasPrice when the chain has no base fee."""
        try:
            base_fee = self.w3.eth.get_block('latest')['baseFeePerGas']
            tip = int(self.w3.eth.max_priority_fee)
            return {'maxFeePerGas': int(base_fee) * 2 + tip, 'maxPriorityFeePerGas': tip}
        except Exception:
            return {'gasPrice': int(self.w3.eth.gas_price)}

    # ---------- Tx lifecycle ----------
    def send_transaction(self, tx: Dict[str, Any]) -> HexBytes:
        """Fill sender/nonce/chain/fees, sign with the wallet and broadcast. Returns the tx hash."""
        sender = self.signer.address
        full_tx = {
            'from': sender,
            'chainId': self.chain_id,
            'nonce': self.w3.eth.get_transaction_count(sender),
            **tx,
        }
        if 'gasPrice' not in full_tx and 'maxFeePerGas' not in full_tx:
            full_tx.update(self.suggested_fees())
        raw = self.signer.sign_transaction(full_tx)
        return HexBytes(self.w3.eth.send_raw_transaction(raw))

    def send_approval(self, token: TokenLike, spender: str, amount: int) -> HexBytes:
        c = self._erc20(_address_of(token))
        fees = self.suggested_fees()
        tx = c.functions.approve(Web3.to_checksum_address(spender), int(amount)).build_transaction({
            'from': self.signer.address,
            'chainId': self.chain_id,
            'nonce': self.w3.eth.get_transaction_count(self.signer.address),
            **fees,
        })
        raw = self.signer.sign_transaction(tx)
        return HexBytes(self.w3.eth.send_raw_transaction(raw))

    def wait_for_confirmations(self, tx_hash, confirmations: Optional[int] = None,
                               timeout: Optional[float] = None, start_delay: float = 2,
                               max_delay: float = 8) -> Tuple[Any, int]:
        """
        Block until `tx_hash` is mined and buried under `confirmations` blocks
        (the inclusion block counts as the first). Returns (receipt, depth).
        Raises TimeoutError when the deadline passes first.
        """
        confirmations = self.cfg.confirmations if confirmations is None else confirmations
        timeout = self.cfg.confirmation_timeout if timeout is None else timeout
        start = time.time()
        delay = start_delay
        receipt = None
        while True:
            if receipt is None:
                try:
                    receipt = self.w3.eth.get_transaction_receipt(tx_hash)
                except TransactionNotFound:
                    receipt = None
            if receipt is not None:
                # a reverted tx will not get better with depth
                if receipt['status'] != 1:
                    return receipt, self._depth(receipt)
                depth = self._depth(receipt)
                if depth >= confirmations:
                    return receipt, depth
            if time.time() - start > timeout:
                raise TimeoutError(
                    f"Timed out after {timeout}s waiting for {confirmations} confirmations of {Web3.to_hex(tx_hash)}"
                )
            time.sleep(delay)
            delay = min(max_delay, delay * 1.5)

    def _depth(self, receipt) -> int:
        return max(0, int(self.w3.eth.block_number) - int(receipt['blockNumber']) + 1)
