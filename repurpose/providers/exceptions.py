"""
Provider exceptions.

ProviderRejected is a genuine provider-side error and is written to the task.
ProviderTransientFailure is a network/timeout/overload condition; it is retried
and never written to the task as a failure.
"""
from typing import Optional


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"[{provider}] {message}")


class ProviderRejected(ProviderError):
    """Provider returned a genuine error code for the job."""

    def __init__(self, provider: str, message: str, code: Optional[str] = None):
        super().__init__(provider, message)
        self.code = code


class ProviderUnavailable(ProviderRejected):
    """Provider is not usable (missing API key, unsupported task type)."""

    def __init__(self, provider: str, reason: str = "unavailable"):
        super().__init__(provider, f"Provider unavailable: {reason}", code="UNAVAILABLE")
        self.reason = reason


class ProviderTransientFailure(ProviderError):
    """Network error, timeout, 5xx or rate limit while talking to the provider."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(provider, message)
        self.status_code = status_code
