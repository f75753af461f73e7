import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import requests
from web3 import Web3

import config
from .errors import RoutingError
from .tokens import Token, TokenAmount

logger = logging.getLogger(__name__)

EXACT_INPUT = "exactIn"


@dataclass(frozen=True)
class SwapQuote:
    input_token: Token
    output_token: Token
    input_amount: int
    calldata: str
    value: int
    gas_estimate: int
    expected_output: int
    quoted_at: float = field(default_factory=time.time)
    target: Optional[str] = None
    gas_price_wei: Optional[int] = None
    route_summary: str = ""

    def __post_init__(self):
        for name in ("input_amount", "value", "gas_estimate", "expected_output"):
            if int(getattr(self, name)) < 0:
                raise ValueError(f"SwapQuote.{name} must be non-negative")
        if self.target is not None and not Web3.is_address(self.target):
            raise ValueError(f"SwapQuote target is not an address: {self.target}")

    def is_stale(self, now: Optional[float] = None, ttl: float = config.QUOTE_TTL_SECONDS) -> bool:
        now = time.time() if now is None else now
        return now - self.quoted_at > ttl

    @property
    def gas_cost_wei(self) -> Optional[int]:
        if self.gas_price_wei is None:
            return None
        return self.gas_estimate * self.gas_price_wei


@dataclass(frozen=True)
class RouteOptions:
    recipient: str
    slippage_tolerance: Decimal = config.SLIPPAGE_TOLERANCE_PERCENT
    deadline_seconds: int = config.SWAP_DEADLINE_SECONDS
    permit: Optional[Any] = None  # PermitSignature


class ReferenceGasPriceProvider:
    """
    Gas prices for route costing, always read from the reference endpoint
    rather than from the chain we execute on.
    """

    def __init__(self, rpc_url: str = config.GAS_REFERENCE_RPC_URL, w3: Optional[Web3] = None):
        self.rpc_url = rpc_url
        self.w3 = w3 if w3 is not None else Web3(Web3.HTTPProvider(rpc_url))

    def get_gas_price(self, latest_block_number: int, request_block_number: Optional[int] = None) -> int:
        return int(self.w3.eth.gas_price)


class UniswapRoutingAPI:
    """Route finding through the hosted Uniswap routing API."""

    def __init__(self, chain_id: int, w3: Web3, gas_price_provider,
                 api_url: str = config.UNISWAP_ROUTING_API_URL,
                 session: Optional[requests.Session] = None, timeout: float = 20):
        self.chain_id = int(chain_id)
        self.w3 = w3
        self.gas_price_provider = gas_price_provider
        self.api_url = api_url
        self.session = session or requests.Session()
        self.timeout = timeout

    def build_params(self, amount_in: TokenAmount, token_out: Token, trade_type: str,
                     options: RouteOptions) -> Dict[str, Any]:
        params = {
            "tokenInAddress": amount_in.token.address,
            "tokenInChainId": self.chain_id,
            "tokenOutAddress": token_out.address,
            "tokenOutChainId": self.chain_id,
            "amount": str(amount_in.raw),
            "type": trade_type,
            "recipient": options.recipient,
            "slippageTolerance": str(options.slippage_tolerance),
            "deadline": options.deadline_seconds,
            "algorithm": "alpha",
            "enableUniversalRouter": "true",
        }
        if options.permit is not None:
            permit = options.permit.permit
            params.update({
                "permitSignature": options.permit.signature,
                "permitNonce": str(permit.nonce),
                "permitExpiration": str(permit.expiration),
                "permitAmount": str(permit.amount),
                "permitSigDeadline": str(permit.sig_deadline),
            })
        return params

    def route(self, amount_in: TokenAmount, token_out: Token, trade_type: str,
              options: RouteOptions) -> Optional[Dict[str, Any]]:
        """
        Returns the raw route payload, or None when the service has no route.
        Transport and HTTP failures raise RoutingError.
        """
        params = self.build_params(amount_in, token_out, trade_type, options)
        try:
            response = self.session.get(self.api_url, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise RoutingError(f"Routing request failed: {e}", phase="quote",
                               token=amount_in.token.symbol, amount=amount_in.raw) from e
        logger.debug("Route request %s -> %s", response.url, response.status_code)

        if response.status_code == 404:
            logger.info("No route: %s", response.text)
            return None
        try:
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.HTTPError, ValueError) as e:
            raise RoutingError(f"Routing service error {response.status_code}: {response.text}",
                               phase="quote", token=amount_in.token.symbol, amount=amount_in.raw) from e

        if payload.get("errorCode") == "NO_ROUTE" or not payload.get("methodParameters"):
            return None

        block_number = int(self.w3.eth.block_number)
        payload["gasPriceWei"] = self.gas_price_provider.get_gas_price(block_number)
        return payload


class QuoteEngine:
    """Turns routing-service payloads into validated SwapQuote objects."""

    def __init__(self, routing_service, recipient: str, clock: Callable[[], float] = time.time,
                 slippage_tolerance: Decimal = config.SLIPPAGE_TOLERANCE_PERCENT):
        self.routing_service = routing_service
        self.recipient = recipient
        self.clock = clock
        self.slippage_tolerance = slippage_tolerance

    def get_quote(self, amount_in, token_in: Token, token_out: Token, permit=None) -> Optional[SwapQuote]:
        raw_in = token_in.to_raw(amount_in)
        options = RouteOptions(recipient=self.recipient, slippage_tolerance=self.slippage_tolerance, permit=permit)
        try:
            payload = self.routing_service.route(TokenAmount(token_in, raw_in), token_out, EXACT_INPUT, options)
        except RoutingError:
            raise
        except Exception as e:
            raise RoutingError(f"Routing service failed: {e}", phase="quote",
                               token=token_in.symbol, amount=raw_in) from e

        if payload is None:
            logger.info("No route found for %s -> %s", token_in.symbol, token_out.symbol)
            return None

        try:
            quote = self._to_quote(payload, token_in, token_out, raw_in)
        except (KeyError, TypeError, ValueError) as e:
            raise RoutingError(f"Malformed route payload: {e}", phase="quote",
                               token=token_in.symbol, amount=raw_in) from e
        logger.info("Quote received for %s to %s: %s", token_in.symbol, token_out.symbol,
                    token_out.format(quote.expected_output))
        return quote

    def _to_quote(self, payload: Dict[str, Any], token_in: Token, token_out: Token, raw_in: int) -> SwapQuote:
        method = payload["methodParameters"]
        value = method.get("value") or "0x0"
        gas_price = payload.get("gasPriceWei")
        return SwapQuote(
            input_token=token_in,
            output_token=token_out,
            input_amount=raw_in,
            calldata=method.get("calldata") or "",
            value=_to_int(value),
            gas_estimate=_to_int(payload.get("gasUseEstimate") or 0),
            expected_output=_to_int(payload["quote"]),
            quoted_at=self.clock(),
            target=method.get("to"),
            gas_price_wei=int(gas_price) if gas_price is not None else None,
            route_summary=payload.get("routeString", ""),
        )


def _to_int(value) -> int:
    if isinstance(value, int):
        return value
    value = str(value).strip()
    return int(value, 16) if value.lower().startswith("0x") else int(value)
