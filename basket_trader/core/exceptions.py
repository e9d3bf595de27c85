"""Error taxonomy for the trading stack.

Expected outcomes are returned as values (a rejected trade is a ``RiskCheck``
with ``passed=False``); only genuine faults are raised.
"""


class BasketTraderError(Exception):
    """Base class for all trading stack errors."""


class ConfigurationError(BasketTraderError):
    """Risk limits or allocation are missing or invalid. Fatal at startup."""


class ExecutionFailure(BasketTraderError):
    """An execution backend failed to fill an order."""

    def __init__(self, message: str, token: str = "", action: str = ""):
        super().__init__(message)
        self.token = token
        self.action = action


class DataUnavailable(BasketTraderError):
    """A price, bar or signal source returned nothing usable."""

    def __init__(self, message: str, token: str = ""):
        super().__init__(message)
        self.token = token


class InvariantViolation(BasketTraderError):
    """Programmer error: an operation would break a ledger or portfolio invariant."""
