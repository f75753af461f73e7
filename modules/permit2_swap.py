import logging
import sys
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import questionary
from rich.console import Console
from rich.logging import RichHandler

import config
from config import SwapConfig
from utils.approval import ApprovalManager
from utils.errors import ConfigurationError, ExecutionError, LedgerQueryError, SwapRunnerError
from utils.events import (
    FAILED, INFO, SKIPPED, STARTED, SUCCEEDED,
    ConsoleReporter, Phase, PhaseEvent,
)
from utils.executor import SwapExecutor, SwapReceipt
from utils.ledger import LedgerClient
from utils.permit import PermitSignature, PermitSigner
from utils.quote import QuoteEngine, ReferenceGasPriceProvider, SwapQuote, UniswapRoutingAPI
from utils.signer import LocalSigner
from utils.tokens import Token, TokenRegistry

console = Console()


@dataclass(frozen=True)
class SwapRequest:
    input_token: Token
    output_token: Token
    amount: Decimal

    @property
    def raw_amount(self) -> int:
        return self.input_token.to_raw(self.amount)

    def label(self) -> str:
        return f"{self.amount.normalize():f} {self.input_token.symbol} -> {self.output_token.symbol}"


@dataclass
class SwapOutcome:
    request: SwapRequest
    status: str
    quote: Optional[SwapQuote] = None
    receipt: Optional[SwapReceipt] = None
    error: Optional[SwapRunnerError] = None
    reason: str = ""

    def detail(self) -> str:
        if self.receipt is not None:
            return f"{self.receipt.tx_hash} (block {self.receipt.block_number})"
        if self.error is not None:
            return str(self.error)
        return self.reason


@dataclass
class RunReport:
    outcomes: List[SwapOutcome] = field(default_factory=list)
    fatal_error: Optional[SwapRunnerError] = None
    phase: Phase = Phase.INIT

    def _with_status(self, status: str) -> List[SwapOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> List[SwapOutcome]:
        return self._with_status(SUCCEEDED)

    @property
    def skipped(self) -> List[SwapOutcome]:
        return self._with_status(SKIPPED)

    @property
    def failed(self) -> List[SwapOutcome]:
        return self._with_status(FAILED)

    @property
    def exit_code(self) -> int:
        return 1 if self.fatal_error is not None else 0


class SwapOrchestrator:
    """
    Runs a batch of swap requests through the Permit2 flow:

        INIT -> CHECK_BALANCE -> ENSURE_APPROVAL -> SIGN_PERMIT
             -> [QUOTE -> EXECUTE] per request -> DONE

    Balance, approval and permit phases run once per distinct input token,
    all before the first quote. Approval, signing, routing infrastructure and
    initial balance-read failures halt the run. A missing route skips one
    request and an execution failure fails one request; the rest still run.
    """

    def __init__(self, owner: str, ledger, approval_manager: ApprovalManager, permit_signer: PermitSigner,
                 quote_engine: QuoteEngine, executor: SwapExecutor,
                 approval_spender: str = config.PERMIT2_ADDRESS,
                 permit_amount: int = config.MAX_UINT160,
                 listeners: Iterable[Callable[[PhaseEvent], None]] = ()):
        self.owner = owner
        self.ledger = ledger
        self.approval_manager = approval_manager
        self.permit_signer = permit_signer
        self.quote_engine = quote_engine
        self.executor = executor
        self.approval_spender = approval_spender
        self.permit_amount = permit_amount
        self.listeners = list(listeners)
        self.logger = logging.getLogger(__name__)
        self._permits: Dict[str, PermitSignature] = {}

    def _emit(self, phase: Phase, status: str, message: str = "", token: Optional[Token] = None,
              amount: Optional[int] = None, **details) -> None:
        event = PhaseEvent(
            phase=phase,
            status=status,
            message=message,
            token=token.symbol if token is not None else None,
            amount=f"{token.from_raw(amount).normalize():f}" if token is not None and amount is not None else None,
            details=details,
        )
        for listener in self.listeners:
            listener(event)

    @staticmethod
    def _totals_by_input(requests: Sequence[SwapRequest]) -> "OrderedDict[str, tuple]":
        totals: "OrderedDict[str, tuple]" = OrderedDict()
        for request in requests:
            token = request.input_token
            _, total = totals.get(token.address, (token, 0))
            totals[token.address] = (token, total + request.raw_amount)
        return totals

    def run(self, requests: Sequence[SwapRequest]) -> RunReport:
        report = RunReport()
        self._permits = {}
        requests = list(requests)
        self._emit(Phase.INIT, STARTED, f"{len(requests)} swap request(s) for {self.owner}")

        try:
            totals = self._totals_by_input(requests)

            report.phase = Phase.CHECK_BALANCE
            for token, total in totals.values():
                self._check_balance(token, total)

            report.phase = Phase.ENSURE_APPROVAL
            for token, total in totals.values():
                self._ensure_approval(token, total)

            report.phase = Phase.SIGN_PERMIT
            for token, _total in totals.values():
                self._permits[token.address] = self._sign_permit(token)

            for request in requests:
                report.phase = Phase.QUOTE
                report.outcomes.append(self._process(request))
                self._log_balances(request)
        except SwapRunnerError as e:
            report.fatal_error = e
            self._emit(report.phase, FAILED, f"run halted: {e}")
            processed = len(report.outcomes)
            if report.phase is Phase.QUOTE:
                # the request being quoted when the run stopped
                report.outcomes.append(SwapOutcome(requests[processed], FAILED, error=e))
                processed += 1
            for request in requests[processed:]:
                report.outcomes.append(
                    SwapOutcome(request, SKIPPED, reason=f"not attempted: run halted in {report.phase.value}")
                )
            self._emit(Phase.DONE, FAILED, "run finished with a fatal error")
            return report

        report.phase = Phase.DONE
        self._emit(Phase.DONE, SUCCEEDED,
                   f"{len(report.succeeded)} succeeded, {len(report.skipped)} skipped, {len(report.failed)} failed")
        return report

    # ---------- phases ----------
    def _check_balance(self, token: Token, total: int) -> None:
        self._emit(Phase.CHECK_BALANCE, STARTED, "reading balance", token=token)
        balance = self.ledger.get_balance(token, self.owner)
        self._emit(Phase.CHECK_BALANCE, SUCCEEDED, f"balance {token.format(balance)}", token=token, balance=balance)
        if balance < total:
            self._emit(Phase.CHECK_BALANCE, INFO,
                       f"balance is below the requested total of {token.format(total)}", token=token)

    def _ensure_approval(self, token: Token, total: int) -> None:
        self._emit(Phase.ENSURE_APPROVAL, STARTED, f"checking allowance for {self.approval_spender}", token=token)
        result = self.approval_manager.ensure_allowance(token, self.owner, self.approval_spender, total)
        if not result.ok:
            raise result.error
        if result.submitted:
            self._emit(Phase.ENSURE_APPROVAL, SUCCEEDED, f"approved in {result.tx_hash}", token=token,
                       tx_hash=result.tx_hash)
            try:
                allowance = self.ledger.get_allowance(token, self.owner, self.approval_spender)
                self._emit(Phase.ENSURE_APPROVAL, INFO, f"allowance now {allowance}", token=token,
                           allowance=allowance)
            except LedgerQueryError as e:
                self.logger.warning("Could not re-read allowance after approval: %s", e)
        else:
            self._emit(Phase.ENSURE_APPROVAL, SKIPPED, "existing allowance is sufficient", token=token)

    def _sign_permit(self, token: Token) -> PermitSignature:
        self._emit(Phase.SIGN_PERMIT, STARTED, "signing Permit2 message", token=token)
        nonce = self.ledger.get_permit2_nonce(self.owner, token, self.permit_signer.spender)
        permit = self.permit_signer.build_permit(token, self.permit_amount, nonce)
        signed = self.permit_signer.sign(permit)
        self._emit(Phase.SIGN_PERMIT, SUCCEEDED, f"signed (nonce {nonce}, deadline {permit.sig_deadline})",
                   token=token)
        return signed

    def _permit_for(self, token: Token) -> PermitSignature:
        signed = self._permits[token.address]
        if signed.permit.is_expired(self.permit_signer.clock()):
            self._emit(Phase.SIGN_PERMIT, INFO, "permit deadline passed, signing a new one", token=token)
            signed = self._sign_permit(token)
            self._permits[token.address] = signed
        return signed

    def _process(self, request: SwapRequest) -> SwapOutcome:
        token_in, token_out, raw = request.input_token, request.output_token, request.raw_amount
        permit = self._permit_for(token_in)

        self._emit(Phase.QUOTE, STARTED, f"quoting to {token_out.symbol}", token=token_in, amount=raw)
        quote = self.quote_engine.get_quote(request.amount, token_in, token_out, permit)
        if quote is None:
            self._emit(Phase.QUOTE, SKIPPED, f"no route to {token_out.symbol}", token=token_in, amount=raw)
            return SwapOutcome(request, SKIPPED, reason="no route found")
        message = f"expect {token_out.format(quote.expected_output)}"
        if quote.gas_cost_wei is not None:
            message += f", est. gas cost {quote.gas_cost_wei} wei"
        self._emit(Phase.QUOTE, SUCCEEDED, message, token=token_in, amount=raw,
                   route=quote.route_summary, gas_cost_wei=quote.gas_cost_wei)

        self._emit(Phase.EXECUTE, STARTED, "submitting swap", token=token_in, amount=raw)
        try:
            receipt = self.executor.execute(quote, token_in, raw)
        except ExecutionError as e:
            self._emit(Phase.EXECUTE, FAILED, str(e), token=token_in, amount=raw)
            return SwapOutcome(request, FAILED, quote=quote, error=e)
        self._emit(Phase.EXECUTE, SUCCEEDED, f"confirmed {receipt.tx_hash}", token=token_in, amount=raw)
        return SwapOutcome(request, SUCCEEDED, quote=quote, receipt=receipt)

    def _log_balances(self, request: SwapRequest) -> None:
        for token in (request.output_token, request.input_token):
            try:
                balance = self.ledger.get_balance(token, self.owner)
            except LedgerQueryError as e:
                self.logger.warning("Balance refresh failed: %s", e)
                continue
            self._emit(Phase.EXECUTE, INFO, f"{token.symbol} balance: {token.format(balance)}", token=token)


def build_requests(swap_config: SwapConfig, registry: TokenRegistry) -> List[SwapRequest]:
    """Resolve configured swap requests; amounts must fit the input token's decimals."""
    requests = []
    for token_in, token_out, amount in swap_config.swap_requests:
        try:
            request = SwapRequest(registry.get(token_in), registry.get(token_out), amount)
            request.input_token.to_raw(amount)
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"Swap request {token_in}:{token_out}:{amount} is invalid: {e}") from e
        requests.append(request)
    return requests


def build_orchestrator(swap_config: SwapConfig, listeners=()) -> SwapOrchestrator:
    signer = LocalSigner(swap_config.wallet_secret)
    ledger = LedgerClient(swap_config, signer)
    gas_source = ReferenceGasPriceProvider(swap_config.gas_reference_rpc_url)
    routing = UniswapRoutingAPI(
        chain_id=swap_config.chain_id,
        w3=gas_source.w3,
        gas_price_provider=gas_source,
        api_url=swap_config.routing_api_url,
    )
    return SwapOrchestrator(
        owner=swap_config.wallet_address,
        ledger=ledger,
        approval_manager=ApprovalManager(ledger),
        permit_signer=PermitSigner(signer, swap_config.chain_id, swap_config.router_address,
                                   permit2_address=swap_config.permit2_address),
        quote_engine=QuoteEngine(routing, recipient=swap_config.wallet_address),
        executor=SwapExecutor(ledger, swap_config.router_address),
        approval_spender=swap_config.permit2_address,
        listeners=listeners,
    )


def main():
    """
    Entry point: read .env, show the plan, confirm, run every configured swap
    and print the summary. Exits non-zero only when the run was halted.
    """
    logging.basicConfig(level=logging.INFO, handlers=[RichHandler(console=console)])

    try:
        swap_config = SwapConfig.from_env()
        registry = TokenRegistry.from_config(swap_config)
        requests = build_requests(swap_config, registry)
    except ConfigurationError as e:
        console.log(f"[bold red]Configuration error: {e}[/bold red]")
        sys.exit(1)

    console.rule("[bold cyan]Swap plan[/bold cyan]")
    console.log(f"Wallet: [green]{swap_config.wallet_address}[/green]  chain: {swap_config.chain_id}")
    console.log(f"Router: {swap_config.router_address}  Permit2: {swap_config.permit2_address}")
    for idx, request in enumerate(requests, start=1):
        console.log(f"[green]#{idx}[/green] {request.label()}")

    if not swap_config.auto_confirm:
        proceed = questionary.confirm("Submit these swaps?", default=False).ask()
        if not proceed:
            console.log("[yellow]Aborted by user. No transactions sent.[/yellow]")
            return

    reporter = ConsoleReporter(console)
    orchestrator = build_orchestrator(swap_config, listeners=[reporter])
    report = orchestrator.run(requests)
    reporter.render_summary(report)
    if report.exit_code:
        sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
