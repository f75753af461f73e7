from decimal import Decimal
from unittest.mock import MagicMock, call

import pytest

import config
from modules import permit2_swap
from modules.permit2_swap import SwapOrchestrator, SwapRequest, build_requests
from config import SwapConfig
from utils.approval import SUFFICIENT, ApprovalManager, ApprovalResult
from utils.errors import ConfigurationError, ExecutionError, LedgerQueryError, RoutingError
from utils.events import FAILED, INFO, SKIPPED, STARTED, SUCCEEDED, Phase
from utils.executor import SwapExecutor, SwapReceipt
from utils.permit import PermitSigner
from utils.quote import SwapQuote
from utils.tokens import TokenRegistry

from conftest import CHAIN_ID, OWNER, ROUTER

NOW = 1_700_000_000
CALLDATA = '0x3593564c' + '00' * 32


def _quote(token_in, token_out, raw, quoted_at=NOW):
    return SwapQuote(token_in, token_out, raw, CALLDATA, 0, 180000, 10**18, quoted_at=quoted_at, target=ROUTER)


def _receipt():
    return SwapReceipt('0x' + 'aa' * 32, 100, 2, True, 120000, 180000)


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def started(self):
        return [e.phase for e in self.events if e.status == STARTED]


def _orchestrator(ledger, quote_engine=None, executor=None, signer=None, clock=lambda: NOW,
                  approval_manager=None):
    if signer is None:
        signer = MagicMock()
        signer.sign_typed_data.return_value = '0x' + '11' * 65
    recorder = Recorder()
    orchestrator = SwapOrchestrator(
        owner=OWNER,
        ledger=ledger,
        approval_manager=approval_manager or ApprovalManager(ledger),
        permit_signer=PermitSigner(signer, CHAIN_ID, ROUTER, clock=clock),
        quote_engine=quote_engine or MagicMock(),
        executor=executor or SwapExecutor(ledger, ROUTER, clock=clock),
        listeners=[recorder],
    )
    return orchestrator, recorder


def test_single_swap_runs_phases_in_order(ledger, weth, dai):
    quote_engine = MagicMock()
    quote_engine.get_quote.return_value = _quote(weth, dai, 10**17)
    orchestrator, recorder = _orchestrator(ledger, quote_engine=quote_engine)

    report = orchestrator.run([SwapRequest(weth, dai, Decimal('0.1'))])

    assert report.exit_code == 0
    assert [o.status for o in report.outcomes] == [SUCCEEDED]
    assert report.outcomes[0].receipt.tx_hash == '0x' + 'aa' * 32
    assert recorder.started() == [
        Phase.INIT, Phase.CHECK_BALANCE, Phase.ENSURE_APPROVAL, Phase.SIGN_PERMIT, Phase.QUOTE, Phase.EXECUTE,
    ]
    assert recorder.events[-1].phase is Phase.DONE
    assert recorder.events[-1].status == SUCCEEDED

    ledger.send_approval.assert_called_once_with(weth, config.PERMIT2_ADDRESS, config.MAX_UINT256)
    ledger.get_permit2_nonce.assert_called_once_with(OWNER, weth, ROUTER)
    ledger.send_transaction.assert_called_once()

    amount, token_in, token_out, permit = quote_engine.get_quote.call_args[0]
    assert (amount, token_in, token_out) == (Decimal('0.1'), weth, dai)
    assert permit.permit.amount == config.MAX_UINT160
    assert permit.signature == '0x' + '11' * 65


def test_single_swap_ends_with_max_allowance_and_one_receipt(ledger, weth, dai):
    ledger.get_allowance.side_effect = [0, config.MAX_UINT256]
    quote_engine = MagicMock()
    quote_engine.get_quote.return_value = _quote(weth, dai, 10**17)
    orchestrator, recorder = _orchestrator(ledger, quote_engine=quote_engine)

    report = orchestrator.run([SwapRequest(weth, dai, Decimal('0.1'))])

    rereads = [e for e in recorder.events if e.phase is Phase.ENSURE_APPROVAL and e.status == INFO]
    assert len(rereads) == 1
    assert rereads[0].details['allowance'] >= config.MAX_UINT256
    ledger.send_approval.assert_called_once()
    assert len(report.succeeded) == 1
    assert [o.receipt for o in report.outcomes if o.receipt is not None] == [report.succeeded[0].receipt]
    assert report.succeeded[0].receipt.success


def test_quote_event_carries_gas_cost(ledger, weth, dai):
    quote = SwapQuote(weth, dai, 10**17, CALLDATA, 0, 180000, 10**18, quoted_at=NOW, target=ROUTER,
                      gas_price_wei=100)
    quote_engine = MagicMock()
    quote_engine.get_quote.return_value = quote
    orchestrator, recorder = _orchestrator(ledger, quote_engine=quote_engine)

    orchestrator.run([SwapRequest(weth, dai, Decimal('0.1'))])

    quoted = [e for e in recorder.events if e.phase is Phase.QUOTE and e.status == SUCCEEDED]
    assert quoted[0].details['gas_cost_wei'] == 18_000_000
    assert 'est. gas cost 18000000 wei' in quoted[0].message


def test_existing_allowance_skips_approval(ledger, weth, dai):
    ledger.get_allowance.return_value = config.MAX_UINT256
    quote_engine = MagicMock()
    quote_engine.get_quote.return_value = _quote(weth, dai, 10**17)
    orchestrator, recorder = _orchestrator(ledger, quote_engine=quote_engine)

    report = orchestrator.run([SwapRequest(weth, dai, Decimal('0.1'))])

    assert report.exit_code == 0
    ledger.send_approval.assert_not_called()
    approval_events = [e for e in recorder.events if e.phase is Phase.ENSURE_APPROVAL]
    assert approval_events[-1].status == SKIPPED


def test_no_route_skips_without_execution(ledger, weth, dai):
    quote_engine = MagicMock()
    quote_engine.get_quote.return_value = None
    executor = MagicMock()
    orchestrator, _ = _orchestrator(ledger, quote_engine=quote_engine, executor=executor)

    report = orchestrator.run([SwapRequest(weth, dai, Decimal('0.1'))])

    assert report.exit_code == 0
    assert report.outcomes[0].status == SKIPPED
    assert report.outcomes[0].reason == 'no route found'
    executor.execute.assert_not_called()


def test_execution_failure_does_not_stop_other_swaps(ledger, weth, dai, usdc):
    requests = [
        SwapRequest(weth, dai, Decimal('0.1')),
        SwapRequest(weth, usdc, Decimal('0.2')),
        SwapRequest(weth, dai, Decimal('0.3')),
    ]
    quote_engine = MagicMock()
    quote_engine.get_quote.side_effect = lambda amount, t_in, t_out, permit: _quote(t_in, t_out, t_in.to_raw(amount))
    executor = MagicMock()
    executor.execute.side_effect = [
        _receipt(),
        ExecutionError('reverted', phase='confirm', token='WETH'),
        _receipt(),
    ]
    orchestrator, _ = _orchestrator(ledger, quote_engine=quote_engine, executor=executor)

    report = orchestrator.run(requests)

    assert [o.status for o in report.outcomes] == [SUCCEEDED, FAILED, SUCCEEDED]
    assert report.exit_code == 0
    assert 'reverted' in report.outcomes[1].detail()
    # one approval covering all three swaps
    ledger.send_approval.assert_called_once()
    ledger.get_allowance.assert_any_call(weth, OWNER, config.PERMIT2_ADDRESS)


def test_approval_failure_halts_before_quoting(ledger, weth, dai):
    ledger.send_approval.side_effect = ValueError('insufficient funds for gas')
    quote_engine = MagicMock()
    orchestrator, recorder = _orchestrator(ledger, quote_engine=quote_engine)

    report = orchestrator.run([SwapRequest(weth, dai, Decimal('0.1')), SwapRequest(weth, dai, Decimal('0.2'))])

    assert report.exit_code == 1
    assert report.phase is Phase.ENSURE_APPROVAL
    assert 'insufficient funds' in str(report.fatal_error)
    assert [o.status for o in report.outcomes] == [SKIPPED, SKIPPED]
    assert report.outcomes[0].reason == 'not attempted: run halted in ensure_approval'
    quote_engine.get_quote.assert_not_called()
    assert recorder.events[-1].phase is Phase.DONE
    assert recorder.events[-1].status == FAILED


def test_signing_failure_halts(ledger, weth, dai):
    signer = MagicMock()
    signer.sign_typed_data.side_effect = RuntimeError('hardware wallet locked')
    quote_engine = MagicMock()
    orchestrator, _ = _orchestrator(ledger, quote_engine=quote_engine, signer=signer)

    report = orchestrator.run([SwapRequest(weth, dai, Decimal('0.1'))])

    assert report.exit_code == 1
    assert report.phase is Phase.SIGN_PERMIT
    quote_engine.get_quote.assert_not_called()
    ledger.send_transaction.assert_not_called()


def test_routing_failure_halts_remaining_requests(ledger, weth, dai):
    quote_engine = MagicMock()
    quote_engine.get_quote.side_effect = [
        _quote(weth, dai, 10**17),
        RoutingError('routing service returned 503', phase='quote', token='WETH'),
    ]
    executor = MagicMock()
    executor.execute.return_value = _receipt()
    orchestrator, _ = _orchestrator(ledger, quote_engine=quote_engine, executor=executor)

    report = orchestrator.run([
        SwapRequest(weth, dai, Decimal('0.1')),
        SwapRequest(weth, dai, Decimal('0.2')),
        SwapRequest(weth, dai, Decimal('0.3')),
    ])

    assert report.exit_code == 1
    assert report.phase is Phase.QUOTE
    assert [o.status for o in report.outcomes] == [SUCCEEDED, FAILED, SKIPPED]
    assert isinstance(report.outcomes[1].error, RoutingError)
    assert executor.execute.call_count == 1


def test_initial_balance_failure_halts(ledger, weth, dai):
    ledger.get_balance.side_effect = LedgerQueryError('rpc down', phase='check_balance', token='WETH')
    orchestrator, _ = _orchestrator(ledger)

    report = orchestrator.run([SwapRequest(weth, dai, Decimal('0.1'))])

    assert report.exit_code == 1
    assert report.phase is Phase.CHECK_BALANCE
    ledger.get_allowance.assert_not_called()


def test_low_balance_only_warns(ledger, weth, dai):
    ledger.get_balance.return_value = 10**16
    quote_engine = MagicMock()
    quote_engine.get_quote.return_value = _quote(weth, dai, 10**17)
    orchestrator, recorder = _orchestrator(ledger, quote_engine=quote_engine)

    report = orchestrator.run([SwapRequest(weth, dai, Decimal('0.1'))])

    assert report.exit_code == 0
    warnings = [e for e in recorder.events if e.phase is Phase.CHECK_BALANCE and e.status == INFO]
    assert len(warnings) == 1
    assert 'below the requested total' in warnings[0].message


def test_post_swap_balance_failure_is_ignored(ledger, weth, dai):
    reads = iter([10**18])

    def balance(token, owner):
        try:
            return next(reads)
        except StopIteration:
            raise LedgerQueryError('rpc down')

    ledger.get_balance.side_effect = balance
    quote_engine = MagicMock()
    quote_engine.get_quote.return_value = _quote(weth, dai, 10**17)
    orchestrator, _ = _orchestrator(ledger, quote_engine=quote_engine)

    report = orchestrator.run([SwapRequest(weth, dai, Decimal('0.1'))])

    assert report.exit_code == 0
    assert report.outcomes[0].status == SUCCEEDED


def test_approvals_cover_total_per_input_token(ledger, weth, dai, usdc):
    approval_manager = MagicMock()
    approval_manager.ensure_allowance.return_value = ApprovalResult(status=SUFFICIENT, allowance_before=10**30)
    quote_engine = MagicMock()
    quote_engine.get_quote.return_value = None
    orchestrator, _ = _orchestrator(ledger, quote_engine=quote_engine, approval_manager=approval_manager)

    orchestrator.run([
        SwapRequest(weth, dai, Decimal('0.1')),
        SwapRequest(usdc, weth, Decimal('1.5')),
        SwapRequest(weth, usdc, Decimal('0.2')),
    ])

    assert approval_manager.ensure_allowance.call_args_list == [
        call(weth, OWNER, config.PERMIT2_ADDRESS, 3 * 10**17),
        call(usdc, OWNER, config.PERMIT2_ADDRESS, 1_500_000),
    ]
    assert ledger.get_permit2_nonce.call_count == 2


def test_expired_permit_is_signed_again(ledger, weth, dai):
    clock = {'now': NOW}
    signer = MagicMock()
    signer.sign_typed_data.return_value = '0x' + '11' * 65
    quote_engine = MagicMock()

    def quote_then_wait(amount, token_in, token_out, permit):
        clock['now'] += config.PERMIT_SIG_DEADLINE_SECONDS
        return None

    quote_engine.get_quote.side_effect = quote_then_wait
    orchestrator, _ = _orchestrator(ledger, quote_engine=quote_engine, signer=signer,
                                    clock=lambda: clock['now'])

    orchestrator.run([SwapRequest(weth, dai, Decimal('0.1')), SwapRequest(weth, dai, Decimal('0.1'))])

    assert signer.sign_typed_data.call_count == 2
    first = quote_engine.get_quote.call_args_list[0][0][3]
    second = quote_engine.get_quote.call_args_list[1][0][3]
    assert second.permit.sig_deadline > first.permit.sig_deadline


def test_build_requests_resolves_symbols(env):
    env['USDC_ADDRESS'] = '0x' + '03' * 20
    env['SWAP_REQUESTS'] = 'WETH:DAI:0.1, weth:usdc:0.25'
    swap_config = SwapConfig.from_env(env)

    requests = build_requests(swap_config, TokenRegistry.from_config(swap_config))

    assert [r.label() for r in requests] == ['0.1 WETH -> DAI', '0.25 WETH -> USDC']
    assert requests[1].raw_amount == 25 * 10**16


def test_main_exits_on_configuration_error(monkeypatch):
    def broken():
        raise ConfigurationError('Missing required setting WALLET_ADDRESS')

    monkeypatch.setattr(permit2_swap.SwapConfig, 'from_env', staticmethod(broken))

    with pytest.raises(SystemExit) as exc:
        permit2_swap.main()
    assert exc.value.code == 1


def test_main_sends_nothing_when_declined(monkeypatch, env):
    swap_config = SwapConfig.from_env(env)
    monkeypatch.setattr(permit2_swap.SwapConfig, 'from_env', staticmethod(lambda: swap_config))
    prompt = MagicMock()
    prompt.ask.return_value = False
    monkeypatch.setattr(permit2_swap.questionary, 'confirm', lambda *a, **k: prompt)
    build = MagicMock()
    monkeypatch.setattr(permit2_swap, 'build_orchestrator', build)

    permit2_swap.main()

    build.assert_not_called()


def test_main_exits_nonzero_when_run_halts(monkeypatch, env):
    env['AUTO_CONFIRM'] = 'true'
    swap_config = SwapConfig.from_env(env)
    monkeypatch.setattr(permit2_swap.SwapConfig, 'from_env', staticmethod(lambda: swap_config))
    orchestrator = MagicMock()
    orchestrator.run.return_value = permit2_swap.RunReport(
        fatal_error=RoutingError('down'), phase=Phase.QUOTE,
    )
    monkeypatch.setattr(permit2_swap, 'build_orchestrator', lambda cfg, listeners: orchestrator)

    with pytest.raises(SystemExit) as exc:
        permit2_swap.main()
    assert exc.value.code == 1
    orchestrator.run.assert_called_once()
