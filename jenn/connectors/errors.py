"""Errors raised by business-system connectors and the order bridge."""


class ConnectorError(Exception):
    """A call to an external business system failed."""

    def __init__(self, connector: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{connector}: {message}")
        self.connector = connector
        self.message = message
        self.status_code = status_code


class ConfigurationError(ConnectorError):
    """A required connection is missing or invalid for the account.

    Not retryable: the account has to reconnect the system.
    """


class OrderNotFoundError(ConnectorError):
    """The requested source order does not exist."""
