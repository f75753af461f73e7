"""Permit2 `PermitSingle` construction and signing.

The owner signs an EIP-712 message letting the Universal Router pull the
token through Permit2 instead of holding a direct ERC-20 approval.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from web3 import Web3

import config
from .errors import SigningError

logger = logging.getLogger(__name__)

PERMIT_SINGLE_TYPES = {
    "PermitDetails": [
        {"name": "token", "type": "address"},
        {"name": "amount", "type": "uint160"},
        {"name": "expiration", "type": "uint48"},
        {"name": "nonce", "type": "uint48"},
    ],
    "PermitSingle": [
        {"name": "details", "type": "PermitDetails"},
        {"name": "spender", "type": "address"},
        {"name": "sigDeadline", "type": "uint256"},
    ],
}


@dataclass(frozen=True)
class Permit:
    token: str
    amount: int
    expiration: int
    nonce: int
    spender: str
    sig_deadline: int

    def __post_init__(self):
        for name in ("token", "spender"):
            value = getattr(self, name)
            if not Web3.is_address(value):
                raise ValueError(f"Permit {name} is not an address: {value}")
            object.__setattr__(self, name, Web3.to_checksum_address(value))
        if not 0 <= self.amount <= config.MAX_UINT160:
            raise ValueError(f"Permit amount {self.amount} outside uint160")
        if not 0 <= self.expiration <= config.MAX_UINT48:
            raise ValueError(f"Permit expiration {self.expiration} outside uint48")
        if not 0 <= self.nonce <= config.MAX_UINT48:
            raise ValueError(f"Permit nonce {self.nonce} outside uint48")
        if self.sig_deadline > self.expiration:
            raise ValueError(
                f"Permit sigDeadline {self.sig_deadline} is after its expiration {self.expiration}"
            )

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self.sig_deadline <= int(now)

    def message(self) -> Dict[str, Any]:
        """The PermitSingle struct as signed and as the router expects it."""
        return {
            "details": {
                "token": self.token,
                "amount": self.amount,
                "expiration": self.expiration,
                "nonce": self.nonce,
            },
            "spender": self.spender,
            "sigDeadline": self.sig_deadline,
        }


@dataclass(frozen=True)
class PermitSignature:
    permit: Permit
    signature: str


class PermitSigner:
    def __init__(self, signer, chain_id: int, spender: str,
                 permit2_address: str = config.PERMIT2_ADDRESS,
                 clock: Callable[[], float] = time.time):
        self.signer = signer
        self.chain_id = int(chain_id)
        self.spender = spender
        self.permit2_address = permit2_address
        self.clock = clock

    def build_permit(self, token, amount: int, nonce: int) -> Permit:
        now = int(self.clock())
        return Permit(
            token=getattr(token, "address", token),
            amount=int(amount),
            expiration=now + config.PERMIT_EXPIRATION_SECONDS,
            nonce=int(nonce),
            spender=self.spender,
            sig_deadline=now + config.PERMIT_SIG_DEADLINE_SECONDS,
        )

    def domain(self) -> Dict[str, Any]:
        return {
            "name": "Permit2",
            "chainId": self.chain_id,
            "verifyingContract": Web3.to_checksum_address(self.permit2_address),
        }

    def sign(self, permit: Permit) -> PermitSignature:
        if permit.is_expired(self.clock()):
            raise SigningError(f"Permit signature deadline {permit.sig_deadline} has passed",
                               phase="sign_permit", token=permit.token)
        try:
            signature = self.signer.sign_typed_data(self.domain(), PERMIT_SINGLE_TYPES, permit.message())
        except Exception as e:
            raise SigningError(f"Signer rejected Permit2 message: {e}",
                               phase="sign_permit", token=permit.token) from e
        if not signature:
            raise SigningError("Signer returned an empty signature", phase="sign_permit", token=permit.token)
        logger.info("Permit2 signature generated for %s (nonce %s)", permit.token, permit.nonce)
        return PermitSignature(permit=permit, signature=signature)
