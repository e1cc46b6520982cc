# File: euconform_bias/capability/service.py
"""
Capability detection service.

Produces a ranked list of `ModelCapability` records across every known model:

1. Each configured local model is reported immediately (no network).
2. The remote server is checked once with a short timeout. If it is not
   reachable, remote probing is skipped and only local results are returned.
   A missing server is a normal configuration, not an error.
3. Installed remote models are listed and probed concurrently. Each probe
   looks in the cache first, then runs under its own timeout and retry
   policy. One failing or slow model never affects its siblings.
4. Every outcome, success or failure, is cached and returned, so callers can
   show why a model is unavailable.
5. Results are ranked (local exact > remote exact > remote fallback) and the
   best tier is flagged `recommended`. Nothing is dropped.

## Usage

```python
from euconform_bias.capability import CapabilityCache, CapabilityDetectionService
from euconform_bias.models import RemoteServer

async with RemoteServer() as server:
    service = CapabilityDetectionService(CapabilityCache(), server=server)
    for capability in await service.detect_all():
        print(capability.model_id, capability.status.value, capability.method.value)
```
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from euconform_bias.errors import (
    BackendUnavailableError,
    InferenceError,
    InferenceTimeoutError,
    ModelNotFoundError,
    PermissionDeniedError,
    ServiceUnavailableError,
)
from euconform_bias.models.registry import list_local_models
from euconform_bias.models.remote_server import RemoteServer
from euconform_bias.models.schema import Backend, CalculationMethod
from euconform_bias.utils.config import DetectionSettings

from .cache import CapabilityCache
from .prober import CapabilityProber
from .retry import RetryPolicy
from .schema import DetectionStatus, ModelCapability, utc_now

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

UNAVAILABLE_ERRORS = (ServiceUnavailableError, BackendUnavailableError)

MSG_TIMEOUT = "Model detection timed out. The model may be slow to respond."
MSG_SERVER_DOWN = "Inference server is not running. Start it to use server-hosted models."
MSG_NOT_FOUND = "Model not found. Please ensure the model is installed on the inference server."
MSG_PERMISSION = "Permission denied by the inference server."
MSG_NETWORK = "Network error. Please check your connection and try again."


def user_facing_error(error: Optional[BaseException]) -> str:
    """
    Turn a detection error into a message suitable for end users.

    Examples:
        >>> user_facing_error(InferenceTimeoutError("Detection timeout after 5.0s"))
        'Model detection timed out. The model may be slow to respond.'
    """
    if error is None:
        return "Unknown error"

    message = str(error)
    lower = message.lower()

    if isinstance(error, ServiceUnavailableError):
        return MSG_SERVER_DOWN
    if isinstance(error, BackendUnavailableError):
        return message
    if isinstance(error, (InferenceTimeoutError, asyncio.TimeoutError)) or "timeout" in lower or "timed out" in lower:
        return MSG_TIMEOUT
    if isinstance(error, ModelNotFoundError) or "not found" in lower:
        return MSG_NOT_FOUND
    if isinstance(error, PermissionDeniedError) or "permission denied" in lower or "unauthorized" in lower:
        return MSG_PERMISSION
    if "network" in lower or "connect" in lower:
        return MSG_NETWORK

    return f"Detection failed: {message}"


# ============================================================================
# Ranking
# ============================================================================


def _tier_score(capability: ModelCapability) -> int:
    if not capability.is_available:
        return 0
    score = 1
    if capability.backend == Backend.LOCAL:
        score += 100
    if capability.method == CalculationMethod.EXACT_LOGPROB:
        score += 50
    return score


def rank_score(capability: ModelCapability) -> int:
    """
    Ranking score: 0 if unavailable, else 1 plus 100 for local, 50 for exact
    and 25 for recommended.
    """
    score = _tier_score(capability)
    if score and capability.recommended:
        score += 25
    return score


def rank_capabilities(capabilities: Sequence[ModelCapability]) -> List[ModelCapability]:
    """
    Flag the best available tier as recommended and sort by rank, best first.

    The sort is stable, so models of equal rank keep their discovery order.
    """
    available_tiers = [_tier_score(c) for c in capabilities if c.is_available]
    best_tier = max(available_tiers) if available_tiers else None

    flagged = [
        c.with_recommended(c.is_available and _tier_score(c) == best_tier)
        for c in capabilities
    ]
    return sorted(flagged, key=rank_score, reverse=True)


# ============================================================================
# Service
# ============================================================================


class CapabilityDetectionService:
    """
    Detects, caches and ranks model capabilities.

    Attributes:
        cache: Shared capability cache.
        server: Remote inference server (None: local models only).
        prober: Performs individual probes.
        retry_policy: Retry/backoff for remote probes.
        settings: Timeouts for reachability, listing and probing.
    """

    def __init__(
        self,
        cache: CapabilityCache,
        server: Optional[RemoteServer] = None,
        prober: Optional[CapabilityProber] = None,
        local_models: Optional[Sequence[Union[str, Dict[str, Any]]]] = None,
        settings: Optional[DetectionSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.cache = cache
        self.settings = settings or DetectionSettings()
        self.server = server if server is not None else (prober.server if prober else None)
        self.prober = prober or CapabilityProber(server=self.server, probe_prompt=self.settings.probe_prompt)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._sleep = sleep
        self._version_read = False

        if local_models is None:
            local_models = list_local_models()
        self.local_models: List[Dict[str, Any]] = [
            {"id": m} if isinstance(m, str) else dict(m) for m in local_models
        ]

    def _failure_capability(
        self, model_id: str, backend: Backend, error: BaseException
    ) -> ModelCapability:
        status = (
            DetectionStatus.UNAVAILABLE
            if isinstance(error, UNAVAILABLE_ERRORS)
            else DetectionStatus.ERROR
        )
        method = (
            CalculationMethod.EXACT_LOGPROB
            if backend == Backend.LOCAL
            else CalculationMethod.LATENCY_FALLBACK
        )
        return ModelCapability(
            model_id=model_id,
            backend=backend,
            method=method,
            status=status,
            last_tested=utc_now(),
            error=user_facing_error(error),
        )

    def detect_local(self) -> List[ModelCapability]:
        """Report every configured local model without touching the network."""
        results = []
        for model_cfg in self.local_models:
            capability = replace(
                self.prober.probe_local(model_cfg["id"]),
                display_name=model_cfg.get("name"),
                size=model_cfg.get("size"),
            )
            self.cache.put(capability)
            results.append(capability)
        return results

    async def _read_server_version(self) -> None:
        """Read the server version once per pass, outside the per-model detection timeout."""
        self.prober.server_version = await self.server.version(timeout=self.settings.reachability_timeout)
        self._version_read = True

    async def _probe_with_timeout(self, model_id: str, backend: Backend) -> ModelCapability:
        timeout = self.settings.probe_timeout
        try:
            return await asyncio.wait_for(self.prober.probe(model_id, backend), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise InferenceTimeoutError(f"Detection timeout after {timeout}s", model_id) from e

    async def detect_model(self, model_id: str, backend: Backend = Backend.REMOTE) -> ModelCapability:
        """
        Capability of a single model: cache first, then probe with retries.

        Never raises for probe failures; they come back as a capability with
        status `unavailable` or `error` and are cached with the short TTL.
        """
        backend = Backend(backend)

        entry = self.cache.get(model_id)
        if entry is not None and entry.capability.backend == backend:
            logger.debug(f"Using cached capability for {model_id}")
            return entry.capability

        if backend == Backend.LOCAL:
            capability = self.prober.probe_local(model_id)
            self.cache.put(capability)
            return capability

        if not self._version_read and self.server is not None:
            await self._read_server_version()

        try:
            capability = await self.retry_policy.run(
                lambda: self._probe_with_timeout(model_id, backend),
                description=f"probe {model_id}",
                sleep=self._sleep,
            )
        except Exception as e:
            logger.error(f"Capability detection failed for {model_id}: {e}")
            capability = self._failure_capability(model_id, backend, e)

        self.cache.put(capability)
        return capability

    async def detect_remote(self, on_progress: Optional[ProgressCallback] = None) -> List[ModelCapability]:
        """Probe every installed remote model concurrently."""
        if self.server is None:
            return []

        if not await self.server.is_reachable(timeout=self.settings.reachability_timeout):
            logger.warning(
                f"Inference server at {self.server.base_url} is not reachable; "
                f"reporting local models only"
            )
            return []

        list_timeout = self.settings.list_timeout
        try:
            models = await asyncio.wait_for(
                self.server.list_models(timeout=list_timeout), timeout=list_timeout
            )
        except (InferenceError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not list remote models: {e}")
            return []

        await self._read_server_version()

        total = len(models)
        completed = 0
        logger.info(f"Probing {total} remote models")

        async def probe_and_report(model_id: str) -> ModelCapability:
            nonlocal completed
            capability = await self.detect_model(model_id, Backend.REMOTE)
            completed += 1
            if on_progress is not None:
                on_progress(completed, total)
            return capability

        outcomes = await asyncio.gather(
            *(probe_and_report(m.name) for m in models),
            return_exceptions=True,
        )

        results = []
        for model, outcome in zip(models, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected failure probing {model.name}: {outcome}")
                outcome = self._failure_capability(model.name, Backend.REMOTE, outcome)
                self.cache.put(outcome)
            results.append(outcome)
        return results

    async def detect_all(self, on_progress: Optional[ProgressCallback] = None) -> List[ModelCapability]:
        """
        Detect every known model and return them ranked, best first.

        Args:
            on_progress: Called with (completed, total) after each remote probe.

        Cache writes are batched, so a file-backed cache is written once.
        """
        started = time.monotonic()

        with self.cache.batch():
            local = self.detect_local()
            remote = await self.detect_remote(on_progress)
        ranked = rank_capabilities(local + remote)

        available = sum(1 for c in ranked if c.is_available)
        logger.info(
            f"Detected {len(ranked)} models ({available} available) "
            f"in {time.monotonic() - started:.2f}s"
        )
        return ranked

    def get_cached(self, model_id: str) -> Optional[ModelCapability]:
        """Cached capability for a model, or None."""
        entry = self.cache.get(model_id)
        return entry.capability if entry else None

    async def resolve(self, model_id: str, backend: Backend) -> ModelCapability:
        """Cached capability if present and matching, otherwise a fresh detection."""
        cached = self.get_cached(model_id)
        if cached is not None and cached.backend == Backend(backend):
            return cached

        logger.info(f"No cached capability for {model_id}, detecting")
        return await self.detect_model(model_id, backend)

    async def refresh(self, on_progress: Optional[ProgressCallback] = None) -> List[ModelCapability]:
        """Drop all cached capabilities and detect again."""
        with self.cache.batch():
            self.cache.invalidate_all()
            return await self.detect_all(on_progress)
