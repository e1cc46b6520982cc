# File: euconform_bias/models/registry.py
"""
Inference client contract, factory and registry.

This module provides a centralized system for:
1. The `InferenceClient` protocol every backend implements
2. Creating a client for a (backend, model) pair
3. Owning client instances so each local model is loaded once per process
4. Listing the configured local model variants

Dispatch happens on the explicit `Backend` value, never on the client class.

## Usage

```python
from euconform_bias.models.registry import InferenceClientRegistry
from euconform_bias.models.schema import Backend

async with InferenceClientRegistry(server_url="http://localhost:11434") as registry:
    client = registry.get_client(Backend.LOCAL, "distilgpt2")
    score = await client.get_log_prob("Der Mann ist Ingenieur.")
```
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

from euconform_bias.errors import ModelUnavailableError
from euconform_bias.utils.config import get_remote_base_url, load_models_config
from euconform_bias.utils.numerics import LATENCY_EPSILON

from .local_hf import LocalInferenceClient, ModelLoader
from .remote_server import RemoteServer
from .schema import Backend, CalculationMethod, LogProbResult

logger = logging.getLogger(__name__)


DEFAULT_LOCAL_MODELS: List[Dict[str, Any]] = [
    {
        "id": "distilgpt2",
        "name": "DistilGPT-2",
        "size": "82M",
        "description": "Smallest and fastest, for quick checks",
    },
    {
        "id": "gpt2",
        "name": "GPT-2",
        "size": "124M",
        "description": "Reference baseline",
    },
    {
        "id": "microsoft/Phi-3-mini-4k-instruct",
        "name": "Phi-3 Mini",
        "size": "3.8B",
        "description": "Multilingual, better German coverage",
    },
    {
        "id": "microsoft/Phi-3.5-mini-instruct",
        "name": "Phi-3.5 Mini",
        "size": "3.8B",
        "description": "Newest Phi variant",
    },
]


# ============================================================================
# Client Protocol
# ============================================================================


class InferenceClient(Protocol):
    """
    Contract shared by the local and remote backends.

    Attributes:
        model_id: Model identifier.
        backend: Where the model runs.
        method: Calculation method in use (None until resolved for remote models).
    """

    model_id: str
    backend: Backend

    @property
    def method(self) -> Optional[CalculationMethod]:
        ...

    async def generate(self, prompt: str) -> str:
        ...

    async def get_log_prob(self, sentence: str) -> float:
        ...

    async def evaluate(self, sentence: str) -> LogProbResult:
        ...

    async def close(self) -> None:
        ...


# ============================================================================
# Capability gate
# ============================================================================


def validate_capability(capability: Any, model_id: str, backend: Backend) -> None:
    """
    Check that a capability allows a bias test of `model_id` on `backend`.

    Raises:
        ModelUnavailableError: If the capability is not available or belongs
            to a different model or backend.
    """
    backend = Backend(backend)

    if capability.model_id != model_id or Backend(capability.backend) != backend:
        raise ModelUnavailableError(
            f"Capability for {capability.model_id} ({Backend(capability.backend).value}) "
            f"does not match requested {model_id} ({backend.value})"
        )

    if not capability.is_available:
        reason = f": {capability.error}" if capability.error else ""
        raise ModelUnavailableError(
            f"Model {model_id} ({backend.value}) is {capability.status.value}{reason}"
        )


# ============================================================================
# Factory
# ============================================================================


def create_inference_client(
    backend: Backend,
    model_id: str,
    *,
    server: Optional[RemoteServer] = None,
    method: Optional[CalculationMethod] = None,
    device: str = "auto",
    loader: Optional[ModelLoader] = None,
    latency_epsilon: float = LATENCY_EPSILON,
) -> InferenceClient:
    """
    Create an inference client for a model.

    Args:
        backend: `Backend.LOCAL` or `Backend.REMOTE` (plain strings accepted).
        model_id: Model identifier.
        server: Remote server (required for remote models).
        method: Known calculation method for remote models.
        device: Device for local models.
        loader: Model loader override for local models.
        latency_epsilon: Smoothing term of the latency fallback for remote models.

    Returns:
        A fresh client.

    Raises:
        ValueError: If the backend is unknown or a remote model has no server.
    """
    backend = Backend(backend)

    if backend == Backend.LOCAL:
        return LocalInferenceClient(model_id, device=device, loader=loader)

    if backend == Backend.REMOTE:
        if server is None:
            raise ValueError(f"Remote model {model_id} requires a 'server'")
        return server.client(model_id, method=method, latency_epsilon=latency_epsilon)

    raise ValueError(f"Unknown backend: '{backend}'")


class InferenceClientRegistry:
    """
    Owns inference clients and the remote server connection.

    Local clients are cached per model id, so a model is loaded at most once
    for the lifetime of the registry. Remote clients are cheap views over the
    shared server connection and are cached per (model, method).

    Attributes:
        server: Shared remote server connection (None disables remote models).
        device: Device for local models.
        latency_epsilon: Smoothing term handed to remote clients.
    """

    def __init__(
        self,
        server: Optional[RemoteServer] = None,
        server_url: Optional[str] = None,
        device: str = "auto",
        loader: Optional[ModelLoader] = None,
        latency_epsilon: float = LATENCY_EPSILON,
    ):
        if server is None and server_url:
            server = RemoteServer(server_url)
        self.server = server
        self.device = device
        self.latency_epsilon = latency_epsilon
        self._loader = loader
        self._clients: Dict[Any, InferenceClient] = {}

    def get_client(
        self,
        backend: Backend,
        model_id: str,
        method: Optional[CalculationMethod] = None,
    ) -> InferenceClient:
        """
        Return the shared client for a model, creating it on first use.

        Args:
            backend: Where the model runs.
            model_id: Model identifier.
            method: Calculation method for remote models (probed if None).
        """
        backend = Backend(backend)
        key = (backend, model_id) if backend == Backend.LOCAL else (backend, model_id, method)

        client = self._clients.get(key)
        if client is None:
            logger.debug(f"Creating {backend.value} client for {model_id}")
            client = create_inference_client(
                backend,
                model_id,
                server=self.server,
                method=method,
                device=self.device,
                loader=self._loader,
                latency_epsilon=self.latency_epsilon,
            )
            self._clients[key] = client

        return client

    def get_client_for(
        self,
        capability: Any,
        model_id: Optional[str] = None,
        backend: Optional[Backend] = None,
    ) -> InferenceClient:
        """
        Return the client for a detected capability.

        Remote clients are primed with the detected calculation method so the
        first scoring call does not probe again.

        Args:
            capability: Detection result (`ModelCapability`).
            model_id: Model the caller intends to test (defaults to the capability's).
            backend: Backend the caller intends to use (defaults to the capability's).

        Raises:
            ModelUnavailableError: If the capability is not available or belongs
                to a different model or backend.
        """
        model_id = model_id or capability.model_id
        backend = Backend(backend or capability.backend)
        validate_capability(capability, model_id, backend)

        method = capability.method if backend == Backend.REMOTE else None
        return self.get_client(backend, model_id, method=method)

    async def close(self) -> None:
        """Close every client and the server connection."""
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

        if self.server is not None:
            await self.server.close()

    async def __aenter__(self) -> "InferenceClientRegistry":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


# ============================================================================
# Local model configuration
# ============================================================================


def list_local_models(models_config: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """
    Local model variants from configs/models.yaml (built-in list if absent).

    Returns:
        List of model dicts with at least an "id" key.

    Examples:
        >>> [m["id"] for m in list_local_models()][:2]
        ['distilgpt2', 'gpt2']
    """
    if models_config is None:
        models_config = load_models_config()

    models = models_config.get("local_models")
    if models is None:
        return [dict(m) for m in DEFAULT_LOCAL_MODELS]

    valid = []
    for model_cfg in models:
        if not model_cfg.get("id"):
            logger.warning(f"Skipping local model with missing 'id': {model_cfg}")
            continue
        valid.append(dict(model_cfg))
    return valid


def get_local_model_config(model_id: str) -> Dict[str, Any]:
    """
    Get configuration for a specific local model by ID.

    Raises:
        ValueError: If the model is not configured.
    """
    models = list_local_models()
    for model_cfg in models:
        if model_cfg["id"] == model_id:
            return model_cfg

    raise ValueError(
        f"Local model '{model_id}' not found in configs/models.yaml. "
        f"Available models: {[m['id'] for m in models]}"
    )


def create_remote_server(
    models_config: Optional[Dict[str, Any]] = None,
    base_url: Optional[str] = None,
) -> RemoteServer:
    """
    Build a `RemoteServer` from configuration (env override honoured).

    Args:
        models_config: Already-loaded models config (loaded on demand if None).
        base_url: Explicit server URL, e.g. from a command-line flag. The
            configured request timeout still applies.
    """
    if models_config is None:
        models_config = load_models_config()

    remote_cfg = models_config.get("remote") or {}
    return RemoteServer(
        base_url or get_remote_base_url(models_config),
        timeout=float(remote_cfg.get("request_timeout", 30.0)),
    )
