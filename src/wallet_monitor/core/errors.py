"""Error taxonomy for the wallet monitor."""

from typing import Optional


class WalletMonitorError(Exception):
    """Base class for all wallet monitor errors."""


class ProviderConnectionError(WalletMonitorError):
    """Streaming transport or handshake failure."""


class CredentialsExhausted(WalletMonitorError):
    """Every configured API key is cooling down."""

    def __init__(self, retry_at: Optional[float] = None):
        self.retry_at = retry_at
        super().__init__("All API keys are cooling down")


class RateLimitedError(WalletMonitorError):
    """Provider answered with HTTP 429."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class MalformedPayload(WalletMonitorError):
    """Provider frame could not be parsed."""


class MetadataUnavailable(WalletMonitorError):
    """Token metadata could not be resolved."""

    def __init__(self, mint: str, reason: str = ""):
        self.mint = mint
        message = f"Metadata unavailable for {mint}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidAddressError(WalletMonitorError, ValueError):
    """Wallet address failed the format check."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Invalid Solana wallet address: {address!r}")
