# File: euconform_bias/capability/prober.py
"""
Capability prober: one probe, one fresh `ModelCapability`.

Local models are never probed over the network. They are available with
exact log-probabilities whenever the in-process runtime is installed, and
unavailable otherwise. Remote models receive the canonical probe request
(short prompt, `logprobs: true`, `num_predict: 1`); a non-empty `logprobs`
array means exact scoring, anything else means latency fallback.

Transport and HTTP errors propagate unchanged. Retrying them and turning
them into user-facing capability records is the detection service's job.
"""

import logging
from typing import Callable, Optional

from euconform_bias.models.local_hf import local_runtime_available
from euconform_bias.models.remote_server import PROBE_PROMPT, RemoteInferenceClient, RemoteServer
from euconform_bias.models.schema import Backend, CalculationMethod

from .schema import DetectionStatus, ModelCapability, utc_now

logger = logging.getLogger(__name__)


class CapabilityProber:
    """
    Determines whether a (model, backend) pair yields exact log-probabilities.

    Attributes:
        server: Remote server used for remote probes (None: remote probes fail).
        probe_prompt: Prompt sent with the canonical probe.
        server_version: Version stamped on remote capabilities. The detection
            service reads it once per detection pass.

    Examples:
        >>> prober = CapabilityProber(server=RemoteServer())
        >>> cap = await prober.probe("llama3.2:1b", Backend.REMOTE)
        >>> cap.method
        <CalculationMethod.LATENCY_FALLBACK: 'latency-fallback'>
    """

    def __init__(
        self,
        server: Optional[RemoteServer] = None,
        probe_prompt: str = PROBE_PROMPT,
        runtime_check: Callable[[], bool] = local_runtime_available,
    ):
        self.server = server
        self.probe_prompt = probe_prompt
        self._runtime_check = runtime_check
        self.server_version: Optional[str] = None

    def probe_local(self, model_id: str) -> ModelCapability:
        """Capability of an in-process model (no network involved)."""
        if self._runtime_check():
            return ModelCapability(
                model_id=model_id,
                backend=Backend.LOCAL,
                method=CalculationMethod.EXACT_LOGPROB,
                status=DetectionStatus.AVAILABLE,
                last_tested=utc_now(),
                recommended=True,
            )

        return ModelCapability(
            model_id=model_id,
            backend=Backend.LOCAL,
            method=CalculationMethod.EXACT_LOGPROB,
            status=DetectionStatus.UNAVAILABLE,
            last_tested=utc_now(),
            error="Local model runtime is not installed. Install 'transformers' to use local models.",
        )

    async def probe_remote(self, model_id: str) -> ModelCapability:
        """
        Send the canonical probe to a remote model.

        Raises:
            ValueError: If the prober has no server.
            InferenceError: Any transport/HTTP failure, unchanged.
        """
        if self.server is None:
            raise ValueError(f"Cannot probe remote model {model_id}: no server configured")

        client = RemoteInferenceClient(self.server, model_id, probe_prompt=self.probe_prompt)
        supports_logprobs = await client.probe_logprob_support()

        method = (
            CalculationMethod.EXACT_LOGPROB if supports_logprobs else CalculationMethod.LATENCY_FALLBACK
        )
        logger.debug(f"Probed {model_id}: {method.value}")

        return ModelCapability(
            model_id=model_id,
            backend=Backend.REMOTE,
            method=method,
            status=DetectionStatus.AVAILABLE,
            last_tested=utc_now(),
            server_version=self.server_version,
        )

    async def probe(self, model_id: str, backend: Backend) -> ModelCapability:
        """Probe a model, dispatching on the backend."""
        backend = Backend(backend)
        if backend == Backend.LOCAL:
            return self.probe_local(model_id)
        return await self.probe_remote(model_id)
