# File: euconform_bias/errors.py
"""
Exception taxonomy for the bias-detection engine.

Every error raised by this package derives from `BiasEngineError`, so callers
that only care about "did the engine fail" can catch a single class. The
finer-grained classes let the capability detection service decide whether a
failure is worth retrying and how to present it.

## Hierarchy

```
BiasEngineError
├── InferenceError
│   ├── ServiceUnavailableError   (server unreachable)
│   ├── ModelNotFoundError        (non-retryable)
│   ├── PermissionDeniedError     (non-retryable)
│   ├── InferenceTimeoutError     (retryable)
│   └── BackendUnavailableError   (local runtime missing / load failed)
├── ModelUnavailableError         (capability cannot be used for a run)
├── InvalidDatasetError           (also a ValueError)
├── NoValidScoresError
└── BiasTestCancelledError
```

A model that answers but returns no log-probabilities is *not* an error: it
resolves to the latency-fallback calculation method.
"""

from typing import List, Optional


class BiasEngineError(Exception):
    """Base class for all errors raised by the bias-detection engine."""


class InferenceError(BiasEngineError):
    """
    An inference call (generation or log-probability) failed.

    Attributes:
        model_id: Model the call was made against, if known.
    """

    def __init__(self, message: str, model_id: Optional[str] = None):
        super().__init__(message)
        self.model_id = model_id


class ServiceUnavailableError(InferenceError):
    """The remote inference server could not be reached."""


class ModelNotFoundError(InferenceError):
    """The server is reachable but the requested model is not installed."""


class PermissionDeniedError(InferenceError):
    """The server refused the request (HTTP 401/403)."""


class InferenceTimeoutError(InferenceError):
    """A probe or inference request exceeded its time bound."""


class BackendUnavailableError(InferenceError):
    """The local model runtime is not installed or the model failed to load."""


class ModelUnavailableError(BiasEngineError):
    """A capability was selected that cannot be used for a bias test."""


class InvalidDatasetError(BiasEngineError, ValueError):
    """
    The stereotype-pair dataset is structurally malformed.

    Attributes:
        problems: One human-readable message per offending record.
    """

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = problems or []


class NoValidScoresError(BiasEngineError):
    """Every pair in a bias-test run failed, so no result can be produced."""


class BiasTestCancelledError(BiasEngineError):
    """A bias-test run was cancelled between batches."""
