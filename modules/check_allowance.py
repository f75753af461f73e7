import logging
import sys
from typing import Tuple

from rich.console import Console
from rich.logging import RichHandler

import config
from config import AllowanceCheckConfig
from utils.errors import ConfigurationError, LedgerQueryError
from utils.ledger import LedgerClient
from utils.tokens import Token

console = Console()

ZERO = "zero"
LIMITED = "limited"
MAXIMAL = "maximal"


def classify_allowance(allowance: int) -> str:
    if allowance <= 0:
        return ZERO
    if allowance >= config.MAX_UINT256:
        return MAXIMAL
    return LIMITED


class AllowanceChecker:
    """Report a token's balance and its Permit2 allowance for the configured wallet."""

    def __init__(self, ledger, owner: str, spender: str = config.PERMIT2_ADDRESS, console=console):
        self.ledger = ledger
        self.owner = owner
        self.spender = spender
        self.console = console

    def check(self, token) -> Tuple[int, int, str]:
        balance = self.ledger.get_balance(token, self.owner)
        self.console.log(f"[bold blue]{token.symbol} Balance:[/bold blue] {token.format(balance)}")

        allowance = self.ledger.get_allowance(token, self.owner, self.spender)
        self.console.log(f"[bold blue]Permit2 Allowance:[/bold blue] {token.format(allowance)}")

        kind = classify_allowance(allowance)
        if kind == ZERO:
            self.console.log("[bold red]Warning: Permit2 allowance is 0. This may cause issues with swaps.[/bold red]")
        else:
            self.console.log("[green]Permit2 allowance is set and greater than 0.[/green]")
            if kind == MAXIMAL:
                self.console.log("[bold green]Permit2 has maximum allowance.[/bold green]")
            else:
                self.console.log("[yellow]Permit2 has a limited allowance. "
                                 "Consider setting it to the maximum if needed.[/yellow]")
        return balance, allowance, kind


def weth_token(check_config: AllowanceCheckConfig, ledger) -> Token:
    """WETH on the configured chain; asks the node for the chain id when CHAIN_ID is unset."""
    chain_id = check_config.chain_id
    if chain_id is None:
        chain_id = ledger.get_chain_id()
    _var, decimals, name = config.TOKEN_METADATA["WETH"]
    return Token(chain_id, check_config.weth_address, decimals, "WETH", name)


def main():
    logging.basicConfig(level=logging.INFO, handlers=[RichHandler(console=console)])
    try:
        check_config = AllowanceCheckConfig.from_env()
    except ConfigurationError as e:
        console.log(f"[bold red]Configuration error: {e}[/bold red]")
        sys.exit(1)

    # read-only: no signer
    ledger = LedgerClient(check_config, signer=None)
    checker = AllowanceChecker(ledger, check_config.wallet_address, spender=check_config.permit2_address)

    console.rule("[bold cyan]Permit2 allowance[/bold cyan]")
    try:
        checker.check(weth_token(check_config, ledger))
    except LedgerQueryError as e:
        console.log(f"[bold red]Error checking Permit2 allowance: {e}[/bold red]")
        sys.exit(1)
    console.log("[bold green]Permit2 allowance check completed[/bold green]")


if __name__ == "__main__":
    main()
