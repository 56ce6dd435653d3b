"""
Providers Layer.

Adapters for the external AI providers that do the heavy lifting:
- Vizard: clip extraction
- fal.ai: persona (LoRA) training and transcription
- Kie.ai: thumbnail images

All adapters classify failures as rejected (written to the task) or
transient (retried, never written as a failure).
"""
from .exceptions import (
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    ProviderTransientFailure,
)
from .base import BaseProviderAdapter
from .vizard import VizardAdapter
from .fal import FalAdapter
from .kie import KieAdapter
from .factory import ProviderRegistry
from .rate_limit import TokenBucketLimiter
from .retry import with_retry

__all__ = [
    # Exceptions
    "ProviderError",
    "ProviderRejected",
    "ProviderUnavailable",
    "ProviderTransientFailure",

    # Adapters
    "BaseProviderAdapter",
    "VizardAdapter",
    "FalAdapter",
    "KieAdapter",
    "ProviderRegistry",

    # Outbound controls
    "TokenBucketLimiter",
    "with_retry",
]
