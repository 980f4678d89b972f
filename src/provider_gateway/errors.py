from __future__ import annotations


class ProviderError(Exception):
    """Base error for provider and gateway failures."""


class ConfigurationError(ProviderError):
    pass


class NotConfiguredError(ConfigurationError):
    """Provider has no API key; never retried."""


class InvalidRequestError(ProviderError):
    """Caller-side request shape problem (bad role, empty messages)."""


class UnknownProviderError(ProviderError):
    def __init__(self, name: str):
        super().__init__(f"Unknown or unconfigured provider: {name!r}")
        self.name = name


class NoProviderAvailableError(ProviderError):
    pass


class CircuitOpenError(ProviderError):
    def __init__(
        self,
        provider: str | None = None,
        retry_after_seconds: int | None = None,
        message: str | None = None,
    ):
        super().__init__(message or f"{provider or 'provider'}: circuit breaker is OPEN")
        self.provider = provider
        self.retry_after_seconds = retry_after_seconds


NON_RETRYABLE_STATUSES = frozenset({400, 401})


class VendorHTTPError(ProviderError):
    """Vendor answered with a non-2xx status."""

    def __init__(
        self,
        status_code: int,
        message: str | None = None,
        *,
        provider: str | None = None,
        retry_after_seconds: int | None = None,
    ):
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code
        self.message = message or f"HTTP {status_code}"
        self.provider = provider
        self.retry_after_seconds = retry_after_seconds

    @property
    def retryable(self) -> bool:
        return self.status_code not in NON_RETRYABLE_STATUSES


class VendorTransportError(ProviderError):
    """Network-level failure talking to the vendor."""


class VendorTimeoutError(VendorTransportError):
    pass


class UpstreamProtocolError(ProviderError):
    """Unexpected upstream response shape / contract mismatch."""


class StreamParseError(ProviderError):
    """Malformed stream event; the stream loop skips the line."""


class UnsupportedFeatureError(ProviderError, NotImplementedError):
    """Optional capability (e.g. embeddings) not offered by this provider."""
