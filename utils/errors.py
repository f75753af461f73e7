from typing import Optional


class SwapRunnerError(Exception):
    """Base class for every error raised by the swap runner."""

    fatal = True

    def __init__(self, message: str, *, phase: Optional[str] = None, token: Optional[str] = None,
                 amount: Optional[int] = None):
        super().__init__(message)
        self.phase = phase
        self.token = token
        self.amount = amount

    def context(self) -> str:
        parts = []
        if self.phase:
            parts.append(f"phase={self.phase}")
        if self.token:
            parts.append(f"token={self.token}")
        if self.amount is not None:
            parts.append(f"amount={self.amount}")
        return ", ".join(parts)

    def __str__(self) -> str:
        message = super().__str__()
        ctx = self.context()
        return f"{message} ({ctx})" if ctx else message


class ConfigurationError(SwapRunnerError):
    """Missing or invalid startup setting. Raised before any network call."""


class LedgerQueryError(SwapRunnerError):
    """A balance, allowance, nonce or code read failed."""


class ApprovalError(SwapRunnerError):
    """The ERC-20 approval was not submitted or never confirmed."""


class SigningError(SwapRunnerError):
    """A Permit2 signature could not be produced."""


class RoutingError(SwapRunnerError):
    """The routing service failed (transport, HTTP or malformed response)."""


class ExecutionError(SwapRunnerError):
    """A single swap failed validation, submission or confirmation."""

    fatal = False
