# File: euconform_bias/models/__init__.py
"""
Inference backends for bias scoring.

- **Local**: HuggingFace causal LMs run in-process (exact log-probabilities)
- **Remote**: models hosted on an Ollama-compatible server (exact
  log-probabilities where the server returns them, latency fallback otherwise)

Both implement the `InferenceClient` protocol, and the registry hands out
shared instances keyed by backend and model id.

## Basic Usage

```python
from euconform_bias.models import Backend, InferenceClientRegistry

registry = InferenceClientRegistry(server_url="http://localhost:11434")
local = registry.get_client(Backend.LOCAL, "distilgpt2")
remote = registry.get_client(Backend.REMOTE, "llama3.2:1b")
```
"""

from .local_hf import LoadedModel, LocalInferenceClient, load_hf_causal_lm, local_runtime_available
from .registry import (
    InferenceClient,
    InferenceClientRegistry,
    create_inference_client,
    create_remote_server,
    get_local_model_config,
    list_local_models,
    validate_capability,
)
from .remote_server import RemoteInferenceClient, RemoteModel, RemoteServer
from .schema import Backend, CalculationMethod, LogProbResult

__all__ = [
    # Schema
    "Backend",
    "CalculationMethod",
    "LogProbResult",
    # Backends
    "LoadedModel",
    "LocalInferenceClient",
    "load_hf_causal_lm",
    "local_runtime_available",
    "RemoteServer",
    "RemoteModel",
    "RemoteInferenceClient",
    # Registry
    "InferenceClient",
    "InferenceClientRegistry",
    "create_inference_client",
    "create_remote_server",
    "list_local_models",
    "validate_capability",
    "get_local_model_config",
]
