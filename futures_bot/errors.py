"""Exception hierarchy shared by the trading loop."""


class BotError(Exception):
    """Base class for every error raised by the bot."""


class ConfigError(BotError):
    """Invalid or missing startup configuration. Fatal."""


class GatewayError(BotError):
    """An exchange call failed.

    ``operation`` and ``symbol`` are carried along so the log line at the
    catching seam can say what was being done and to which instrument.
    """

    def __init__(self, message: str, operation: str = "", symbol: str = "", code=None):
        super().__init__(message)
        self.operation = operation
        self.symbol = symbol
        self.code = code

    def __str__(self):
        parts = [super().__str__()]
        if self.operation:
            parts.insert(0, f"[{self.operation}{' ' + self.symbol if self.symbol else ''}]")
        return " ".join(parts)


class TransientGatewayError(GatewayError):
    """Network failure, timeout or rate limit. Worth retrying."""


class PermanentGatewayError(GatewayError):
    """The exchange rejected the request itself (bad symbol, bad parameters)."""


class InsufficientDataError(BotError):
    """Too few candles or indicator points to evaluate an instrument."""


class InvalidOrderError(BotError):
    """Order parameters rejected locally before reaching the exchange."""
