from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterator, Union

from web3 import Web3

import config

Amount = Union[str, int, Decimal]


@dataclass(frozen=True)
class Token:
    chain_id: int
    address: str
    decimals: int
    symbol: str
    name: str

    def __post_init__(self):
        if not Web3.is_address(self.address):
            raise ValueError(f"Invalid token address for {self.symbol}: {self.address}")
        # frozen, so go through object.__setattr__ to normalise
        object.__setattr__(self, "address", Web3.to_checksum_address(self.address))
        if not 0 <= int(self.decimals) <= 255:
            raise ValueError(f"Invalid decimals for {self.symbol}: {self.decimals}")

    def to_raw(self, amount: Amount) -> int:
        """Human amount -> smallest unit. Rejects more fractional digits than the token has."""
        try:
            value = Decimal(str(amount))
        except InvalidOperation as e:
            raise ValueError(f"Invalid {self.symbol} amount: {amount!r}") from e
        if not value.is_finite() or value < 0:
            raise ValueError(f"Invalid {self.symbol} amount: {amount!r}")
        scaled = value.scaleb(self.decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"{amount} has more than {self.decimals} decimals for {self.symbol}")
        return int(scaled)

    def from_raw(self, raw: int) -> Decimal:
        return Decimal(int(raw)).scaleb(-self.decimals)

    def format(self, raw: int) -> str:
        return f"{self.from_raw(raw).normalize():f} {self.symbol}"


@dataclass(frozen=True)
class TokenAmount:
    token: Token
    raw: int

    def __post_init__(self):
        if int(self.raw) < 0:
            raise ValueError(f"Negative {self.token.symbol} amount: {self.raw}")

    def __str__(self) -> str:
        return self.token.format(self.raw)


class TokenRegistry:
    """Tradable tokens known to this run, keyed by upper-case symbol."""

    def __init__(self, tokens=()):
        self._by_symbol: Dict[str, Token] = {}
        for token in tokens:
            self.add(token)

    @classmethod
    def from_config(cls, swap_config) -> "TokenRegistry":
        tokens = []
        for symbol, address in swap_config.token_addresses.items():
            _var, decimals, name = config.TOKEN_METADATA[symbol]
            tokens.append(Token(swap_config.chain_id, address, decimals, symbol, name))
        return cls(tokens)

    def add(self, token: Token) -> None:
        key = token.symbol.upper()
        if key in self._by_symbol:
            raise ValueError(f"Token {key} registered twice")
        self._by_symbol[key] = token

    def get(self, symbol: str) -> Token:
        try:
            return self._by_symbol[symbol.upper()]
        except KeyError:
            raise KeyError(f"Unknown token symbol {symbol}") from None

    def __contains__(self, symbol: str) -> bool:
        return symbol.upper() in self._by_symbol

    def __iter__(self) -> Iterator[Token]:
        return iter(self._by_symbol.values())

    def __len__(self) -> int:
        return len(self._by_symbol)
