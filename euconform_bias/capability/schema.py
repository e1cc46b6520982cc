# File: euconform_bias/capability/schema.py
"""
Schema for model capabilities and their cache entries.

A `ModelCapability` answers "can this (model, backend) pair give us exact
log-probabilities, and is it usable right now?". Capabilities are immutable:
re-detection produces a new object, it never edits an old one.

## Status and method

- `status` is one of `detecting`, `available`, `unavailable`, `error`.
- `method` is only meaningful when `status == available`.
- A local model that is available always uses `exact-logprob`, because the
  in-process runtime exposes the full output distribution.

## Serialization

Both classes round-trip through plain dictionaries (`to_dict` / `from_dict`)
with ISO-8601 timestamps, which is the form the cache persists.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from euconform_bias.models.schema import Backend, CalculationMethod


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DetectionStatus(str, Enum):
    """Outcome of a capability detection."""

    DETECTING = "detecting"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


@dataclass(frozen=True)
class ModelCapability:
    """
    Detected capability of one model on one backend.

    Attributes:
        model_id: Model identifier.
        backend: Where the model runs.
        method: Scoring method (meaningful only when available).
        status: Detection outcome.
        last_tested: When the detection ran.
        error: User-facing reason when not available.
        recommended: Whether the model is among the best choices found.
        display_name: Optional human-readable name.
        size: Optional size label (e.g. "124M").
        server_version: Inference server version, for remote models.

    Examples:
        >>> cap = ModelCapability(
        ...     model_id="distilgpt2",
        ...     backend=Backend.LOCAL,
        ...     method=CalculationMethod.EXACT_LOGPROB,
        ...     status=DetectionStatus.AVAILABLE,
        ...     recommended=True,
        ... )
        >>> cap.is_available
        True
    """

    model_id: str
    backend: Backend
    method: CalculationMethod
    status: DetectionStatus
    last_tested: Optional[datetime] = None
    error: Optional[str] = None
    recommended: bool = False
    display_name: Optional[str] = None
    size: Optional[str] = None
    server_version: Optional[str] = None

    def __post_init__(self):
        """Coerce plain strings to enums and enforce the local-backend invariant."""
        object.__setattr__(self, "backend", Backend(self.backend))
        object.__setattr__(self, "method", CalculationMethod(self.method))
        object.__setattr__(self, "status", DetectionStatus(self.status))

        if not self.model_id:
            raise ValueError("ModelCapability requires a model_id")

        if (
            self.backend == Backend.LOCAL
            and self.status == DetectionStatus.AVAILABLE
            and self.method != CalculationMethod.EXACT_LOGPROB
        ):
            raise ValueError(
                f"Local model {self.model_id} must use exact-logprob when available"
            )

    @property
    def is_available(self) -> bool:
        return self.status == DetectionStatus.AVAILABLE

    def with_recommended(self, recommended: bool) -> ModelCapability:
        """Return a copy with a different `recommended` flag."""
        return replace(self, recommended=recommended)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "model_id": self.model_id,
            "backend": self.backend.value,
            "method": self.method.value,
            "status": self.status.value,
            "last_tested": self.last_tested.isoformat() if self.last_tested else None,
            "error": self.error,
            "recommended": self.recommended,
            "display_name": self.display_name,
            "size": self.size,
            "server_version": self.server_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ModelCapability:
        """Create a ModelCapability from `to_dict` output."""
        return cls(
            model_id=data["model_id"],
            backend=data["backend"],
            method=data["method"],
            status=data["status"],
            last_tested=_parse_datetime(data.get("last_tested")),
            error=data.get("error"),
            recommended=bool(data.get("recommended", False)),
            display_name=data.get("display_name"),
            size=data.get("size"),
            server_version=data.get("server_version"),
        )

    def __repr__(self) -> str:
        return (
            f"ModelCapability(model='{self.model_id}', backend='{self.backend.value}', "
            f"method='{self.method.value}', status='{self.status.value}', "
            f"recommended={self.recommended})"
        )


@dataclass(frozen=True)
class CapabilityCacheEntry:
    """
    A cached capability with its validity window.

    Attributes:
        capability: The cached capability.
        cached_at: When the entry was written.
        expires_at: First instant at which the entry is no longer valid.
    """

    capability: ModelCapability
    cached_at: datetime
    expires_at: datetime

    def __post_init__(self):
        if self.expires_at <= self.cached_at:
            raise ValueError(
                f"Cache entry for {self.capability.model_id} expires before it was cached"
            )

    @property
    def model_id(self) -> str:
        return self.capability.model_id

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once `now` has reached `expires_at`."""
        return (now or utc_now()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capability": self.capability.to_dict(),
            "cached_at": self.cached_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CapabilityCacheEntry:
        return cls(
            capability=ModelCapability.from_dict(data["capability"]),
            cached_at=_parse_datetime(data["cached_at"]),
            expires_at=_parse_datetime(data["expires_at"]),
        )
