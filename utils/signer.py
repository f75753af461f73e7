from typing import Any, Dict, List

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3


class LocalSigner:
    """
    Holds the wallet key and signs on its behalf. Nothing else in the
    runner sees the private key.
    """

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_typed_data(self, domain: Dict[str, Any], types: Dict[str, List[Dict[str, str]]],
                        values: Dict[str, Any]) -> str:
        """EIP-712 signature over `values`; returns 0x-prefixed hex."""
        signable = encode_typed_data(domain_data=domain, message_types=types, message_data=values)
        signed = self._account.sign_message(signable)
        return Web3.to_hex(signed.signature)

    def sign_transaction(self, tx: Dict[str, Any]) -> bytes:
        signed = self._account.sign_transaction(tx)
        return bytes(signed.raw_transaction)
