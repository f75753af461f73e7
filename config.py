# config.py
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv
from eth_account import Account
from web3 import Web3

from utils.errors import ConfigurationError

load_dotenv()

MODULE_PATH = Path(__file__).resolve().parent / "modules"

# Canonical Permit2 deployment, same address on every EVM chain
PERMIT2_ADDRESS = "0x000000000022D473030F116dDEE9F6B43aC78BA3"

UNISWAP_ROUTING_API_URL = "https://api.uniswap.org/v1/quote"
# Gas prices are always read from this endpoint, whatever chain we execute on
GAS_REFERENCE_RPC_URL = "https://arb1.arbitrum.io/rpc"

MAX_UINT256 = 2**256 - 1
MAX_UINT160 = 2**160 - 1
MAX_UINT48 = 2**48 - 1

DEFAULT_GAS_LIMIT = 210000
GAS_HEADROOM_PERCENT = 120
CONFIRMATIONS = 2
CONFIRMATION_TIMEOUT = 300

PERMIT_EXPIRATION_SECONDS = 30 * 24 * 60 * 60  # 30 days
PERMIT_SIG_DEADLINE_SECONDS = 30 * 60  # 30 minutes
SWAP_DEADLINE_SECONDS = 30 * 60
SLIPPAGE_TOLERANCE_PERCENT = Decimal("5")
QUOTE_TTL_SECONDS = 120

DEFAULT_SWAP_REQUESTS = "WETH:DAI:0.1"

# symbol -> (env var, decimals, name)
TOKEN_METADATA: Dict[str, Tuple[str, int, str]] = {
    "WETH": ("WETH_ADDRESS", 18, "Wrapped Ether"),
    "DAI": ("DAI_ADDRESS", 18, "Dai Stablecoin"),
    "USDC": ("USDC_ADDRESS", 6, "USD Coin"),
    "NEAR": ("NEAR_ADDRESS", 18, "NEAR Protocol"),
}
REQUIRED_TOKENS = ("WETH", "DAI")

ERC20_ABI = '''[
  {
    "type": "function",
    "name": "balanceOf",
    "stateMutability": "view",
    "inputs": [{"name": "owner", "type": "address"}],
    "outputs": [{"name": "", "type": "uint256"}]
  },
  {
    "type": "function",
    "name": "allowance",
    "stateMutability": "view",
    "inputs": [
      {"name": "owner", "type": "address"},
      {"name": "spender", "type": "address"}
    ],
    "outputs": [{"name": "", "type": "uint256"}]
  },
  {
    "type": "function",
    "name": "approve",
    "stateMutability": "nonpayable",
    "inputs": [
      {"name": "spender", "type": "address"},
      {"name": "amount", "type": "uint256"}
    ],
    "outputs": [{"name": "", "type": "bool"}]
  }
]'''

PERMIT2_ABI = '''[
  {
    "inputs": [
      {"internalType": "address", "name": "owner", "type": "address"},
      {"internalType": "address", "name": "token", "type": "address"},
      {"internalType": "address", "name": "spender", "type": "address"}
    ],
    "name": "allowance",
    "outputs": [
      {"internalType": "uint160", "name": "amount", "type": "uint160"},
      {"internalType": "uint48", "name": "expiration", "type": "uint48"},
      {"internalType": "uint48", "name": "nonce", "type": "uint48"}
    ],
    "stateMutability": "view",
    "type": "function"
  }
]'''


@dataclass(frozen=True)
class SwapConfig:
    """Everything the swap runner needs, read once at startup."""

    wallet_address: str
    wallet_secret: str = field(repr=False)
    chain_id: int
    rpc_urls: Tuple[str, ...]
    router_address: str
    token_addresses: Dict[str, str]
    swap_requests: Tuple[Tuple[str, str, Decimal], ...]
    gas_reference_rpc_url: str = GAS_REFERENCE_RPC_URL
    routing_api_url: str = UNISWAP_ROUTING_API_URL
    permit2_address: str = PERMIT2_ADDRESS
    confirmations: int = CONFIRMATIONS
    confirmation_timeout: int = CONFIRMATION_TIMEOUT
    auto_confirm: bool = False

    @property
    def rpc_url(self) -> str:
        return self.rpc_urls[0]

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "SwapConfig":
        """
        Build the configuration from the process environment (or a given mapping).
        Raises ConfigurationError on the first missing or malformed value.
        """
        env = os.environ if env is None else env

        wallet_address = _require_address(env, "WALLET_ADDRESS")
        wallet_secret = _require(env, "WALLET_SECRET")
        try:
            derived = Account.from_key(wallet_secret).address
        except Exception as e:
            raise ConfigurationError(f"WALLET_SECRET is not a valid private key: {e}") from e
        if derived.lower() != wallet_address.lower():
            raise ConfigurationError(
                f"WALLET_SECRET controls {derived}, not WALLET_ADDRESS {wallet_address}"
            )

        chain_id = _parse_int(env, "CHAIN_ID", _require(env, "CHAIN_ID"))
        if chain_id <= 0:
            raise ConfigurationError(f"CHAIN_ID must be positive, got {chain_id}")

        rpc_urls = _build_rpc_urls(_require(env, "RPC_URL"), env.get("EXTRA_RPC_URLS", ""))
        router_address = _require_address(env, "UNIVERSAL_ROUTER_ADDRESS")

        token_addresses: Dict[str, str] = {}
        for symbol, (var, _decimals, _name) in TOKEN_METADATA.items():
            if symbol in REQUIRED_TOKENS:
                token_addresses[symbol] = _require_address(env, var)
            elif env.get(var, "").strip():
                token_addresses[symbol] = _require_address(env, var)

        swap_requests = parse_swap_requests(
            env.get("SWAP_REQUESTS", "").strip() or DEFAULT_SWAP_REQUESTS,
            known_symbols=token_addresses.keys(),
        )

        confirmations = _parse_int(env, "CONFIRMATIONS", env.get("CONFIRMATIONS") or str(CONFIRMATIONS))
        timeout = _parse_int(env, "CONFIRMATION_TIMEOUT", env.get("CONFIRMATION_TIMEOUT") or str(CONFIRMATION_TIMEOUT))
        if confirmations < 1 or timeout < 1:
            raise ConfigurationError("CONFIRMATIONS and CONFIRMATION_TIMEOUT must be at least 1")

        return cls(
            wallet_address=Web3.to_checksum_address(wallet_address),
            wallet_secret=wallet_secret,
            chain_id=chain_id,
            rpc_urls=rpc_urls,
            router_address=Web3.to_checksum_address(router_address),
            token_addresses={s: Web3.to_checksum_address(a) for s, a in token_addresses.items()},
            swap_requests=swap_requests,
            gas_reference_rpc_url=env.get("GAS_REFERENCE_RPC_URL", "").strip() or GAS_REFERENCE_RPC_URL,
            routing_api_url=env.get("UNISWAP_ROUTING_API_URL", "").strip() or UNISWAP_ROUTING_API_URL,
            confirmations=confirmations,
            confirmation_timeout=timeout,
            auto_confirm=env.get("AUTO_CONFIRM", "").strip().lower() in ("1", "true", "yes"),
        )


@dataclass(frozen=True)
class AllowanceCheckConfig:
    """Read-only settings for the allowance check: no key, router or swap list needed."""

    wallet_address: str
    rpc_urls: Tuple[str, ...]
    weth_address: str
    chain_id: Optional[int] = None
    permit2_address: str = PERMIT2_ADDRESS
    confirmations: int = CONFIRMATIONS
    confirmation_timeout: int = CONFIRMATION_TIMEOUT

    @property
    def rpc_url(self) -> str:
        return self.rpc_urls[0]

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AllowanceCheckConfig":
        env = os.environ if env is None else env
        wallet_address = _require_address(env, "WALLET_ADDRESS")
        rpc_urls = _build_rpc_urls(_require(env, "RPC_URL"), env.get("EXTRA_RPC_URLS", ""))
        weth_address = _require_address(env, "WETH_ADDRESS")
        chain_raw = (env.get("CHAIN_ID") or "").strip()
        return cls(
            wallet_address=Web3.to_checksum_address(wallet_address),
            rpc_urls=rpc_urls,
            weth_address=Web3.to_checksum_address(weth_address),
            chain_id=_parse_int(env, "CHAIN_ID", chain_raw) if chain_raw else None,
        )


def parse_swap_requests(raw: str, known_symbols) -> Tuple[Tuple[str, str, Decimal], ...]:
    """Parse "IN:OUT:AMOUNT" entries separated by commas, e.g. "WETH:DAI:0.1,WETH:USDC:0.1"."""
    known = {s.upper() for s in known_symbols}
    out = []
    for entry in raw.split(','):
        entry = entry.strip()
        if not entry:
            continue
        parts = [p.strip() for p in entry.split(':')]
        if len(parts) != 3:
            raise ConfigurationError(f"Swap request '{entry}' must look like IN:OUT:AMOUNT")
        token_in, token_out, amount_raw = parts[0].upper(), parts[1].upper(), parts[2]
        for symbol in (token_in, token_out):
            if symbol not in known:
                raise ConfigurationError(f"Swap request '{entry}' uses unconfigured token {symbol}")
        if token_in == token_out:
            raise ConfigurationError(f"Swap request '{entry}' swaps a token for itself")
        try:
            amount = Decimal(amount_raw)
        except InvalidOperation as e:
            raise ConfigurationError(f"Swap request '{entry}' has invalid amount {amount_raw!r}") from e
        if not amount.is_finite() or amount <= 0:
            raise ConfigurationError(f"Swap request '{entry}' amount must be positive")
        out.append((token_in, token_out, amount))
    if not out:
        raise ConfigurationError("No swap requests configured")
    return tuple(out)


def _require(env: Mapping[str, str], name: str) -> str:
    value = (env.get(name) or "").strip()
    if not value:
        raise ConfigurationError(f"Missing required setting {name}. Set it in .env or the environment")
    return value


def _require_address(env: Mapping[str, str], name: str) -> str:
    value = _require(env, name)
    if not Web3.is_address(value):
        raise ConfigurationError(f"{name} is not a valid address: {value}")
    return value


def _parse_int(env: Mapping[str, str], name: str, value: str) -> int:
    try:
        return int(value, 0)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from e


def _build_rpc_urls(primary: str, extras_raw: str) -> Tuple[str, ...]:
    urls = [primary] + [u.strip() for u in extras_raw.split(',') if u.strip()]
    # de-duplicate, keep order
    dedup = []
    seen = set()
    for u in urls:
        if u not in seen:
            dedup.append(u)
            seen.add(u)
    return tuple(dedup)
