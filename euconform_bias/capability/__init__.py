# File: euconform_bias/capability/__init__.py
"""
Model capability detection.

## Components

- **Schema**: `ModelCapability`, `CapabilityCacheEntry`, `DetectionStatus`
- **Cache**: `CapabilityCache` with `InMemoryStore` / `JsonFileStore` persistence
- **Prober**: `CapabilityProber`, one probe per (model, backend)
- **Retry**: `RetryPolicy`, exponential backoff with non-retryable errors
- **Service**: `CapabilityDetectionService`, fan-out detection and ranking
"""

from .cache import CapabilityCache, InMemoryStore, JsonFileStore, KeyValueStore
from .prober import CapabilityProber
from .retry import RetryPolicy
from .schema import CapabilityCacheEntry, DetectionStatus, ModelCapability, utc_now
from .service import (
    CapabilityDetectionService,
    rank_capabilities,
    rank_score,
    user_facing_error,
)

__all__ = [
    # Schema
    "ModelCapability",
    "CapabilityCacheEntry",
    "DetectionStatus",
    "utc_now",
    # Cache
    "CapabilityCache",
    "KeyValueStore",
    "InMemoryStore",
    "JsonFileStore",
    # Probing
    "CapabilityProber",
    "RetryPolicy",
    # Service
    "CapabilityDetectionService",
    "rank_capabilities",
    "rank_score",
    "user_facing_error",
]
