class Error(Exception):
    """Base exception for inscriber errors."""

    pass


class ConfigurationError(Error):
    """Raised when configuration is invalid."""

    pass


class ExternalServiceError(Error):
    """A remote dependency failed or timed out; retried on the next cycle."""

    pass


class ChainProviderError(ExternalServiceError):
    """Raised when block data cannot be fetched from the chain provider."""

    pass


class MarketplaceError(ExternalServiceError):
    """Raised when the inscription marketplace rejects or fails a request."""

    pass


class WalletError(ExternalServiceError):
    """
    Raised when the funding wallet cannot be queried or cannot pay.

    ``ambiguous`` is set when the node may have acted on the request even
    though no answer came back, e.g. a read timeout after ``sendtoaddress``.
    """

    def __init__(self, message: str, ambiguous: bool = False):
        super().__init__(message)
        self.ambiguous = ambiguous


class InsufficientFundsError(Error):
    """Raised when the platform wallet cannot fund an inscription order."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient wallet balance: required {required} sats, "
            f"available {available} sats"
        )
