# mmbot/errors.py
"""Engine error taxonomy"""


class ExchangeError(Exception):
    """Exchange call failed"""

    def __init__(self, message: str, code: str | int = -1):
        self.code = code
        self.message = message
        super().__init__(message)


class TransientExchangeError(ExchangeError):
    """Timeout, 5xx or rate limit. Safe to retry.

    ``ambiguous`` is set when the request may have reached the exchange
    (timeout, gateway error), so the order status must be checked before
    submitting again.
    """

    def __init__(self, message: str, code: str | int = -1, ambiguous: bool = False):
        super().__init__(message, code)
        self.ambiguous = ambiguous


class RejectedOrderError(ExchangeError):
    """Insufficient balance, invalid price or size. Never retried."""


class OrderNotFoundError(RejectedOrderError):
    """The exchange does not know the order (already filled or cancelled)"""


class ConfigurationError(Exception):
    """Missing or invalid credentials"""


class InternalInvariantError(Exception):
    """A strategy reached a state it must never stay in"""


class BotNotFoundError(LookupError):
    pass


class BotStateError(Exception):
    """Lifecycle operation not allowed in the bot's current status"""


class EngineCapacityError(Exception):
    pass
