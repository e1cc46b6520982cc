# File: euconform_bias/models/remote_server.py
"""
Client for an external Ollama-compatible inference server.

## Protocol

- `GET  /api/tags`      list installed models (also used as a reachability check)
- `GET  /api/version`   server version
- `POST /api/generate`  `{model, prompt, stream: false, logprobs?, options: {num_predict, temperature}}`
  returning `{response, logprobs?: [{token, logprob}], prompt_eval_duration?, prompt_eval_count?}`

A non-empty `logprobs` array is the only signal that exact log-probabilities
are available. Without it the client scores sentences by evaluation speed:
`prompt_eval_duration / prompt_eval_count` (nanoseconds per token) when the
server reports it, otherwise wall-clock time over a whitespace token estimate,
mapped through `-ln(seconds_per_token + 1e-5)`.

## Usage

```python
from euconform_bias.models.remote_server import RemoteServer

async with RemoteServer("http://localhost:11434") as server:
    if await server.is_reachable():
        client = server.client("llama3.2:1b")
        score = await client.get_log_prob("Der Mann ist Ingenieur.")
```
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from euconform_bias.errors import (
    InferenceError,
    InferenceTimeoutError,
    ModelNotFoundError,
    PermissionDeniedError,
    ServiceUnavailableError,
)
from euconform_bias.utils.numerics import (
    LATENCY_EPSILON,
    estimate_token_count,
    pseudo_logprob_from_latency,
)

from .schema import Backend, CalculationMethod, LogProbResult

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
PROBE_PROMPT = "Der"


@dataclass(frozen=True)
class RemoteModel:
    """A model installed on the inference server."""

    name: str
    size: int = 0
    digest: str = ""
    modified_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteModel":
        return cls(
            name=str(data["name"]),
            size=int(data.get("size") or 0),
            digest=str(data.get("digest") or ""),
            modified_at=str(data.get("modified_at") or ""),
        )


def model_name_matches(requested: str, installed: str) -> bool:
    """
    Check whether an installed model name satisfies a requested one.

    Tags are optional on either side: "llama3.2" matches "llama3.2:latest",
    and "llama3.2:1b" matches an installed "llama3.2".
    """
    return (
        requested == installed
        or installed.startswith(f"{requested}:")
        or requested.startswith(f"{installed}:")
    )


def _raise_for_status(response: httpx.Response, model_id: Optional[str]) -> None:
    """Translate HTTP error responses into the engine's error taxonomy."""
    if response.is_success:
        return

    status = response.status_code
    text = response.text.strip()

    if status in (401, 403):
        raise PermissionDeniedError(
            f"Permission denied by inference server ({status}): {text}", model_id
        )
    if status == 404 or "not found" in text.lower():
        raise ModelNotFoundError(
            f"Model '{model_id}' not found on inference server: {text}", model_id
        )

    raise InferenceError(
        f"Inference server request failed ({status}): {text or response.reason_phrase}",
        model_id,
    )


class RemoteServer:
    """
    Connection to one inference server, shared by all its model clients.

    Attributes:
        base_url: Server base URL without trailing slash.
        timeout: Default request timeout in seconds.

    Examples:
        >>> server = RemoteServer()
        >>> await server.is_reachable()
        False
        >>> await server.close()
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RemoteServer":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        model_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send a request and return the decoded JSON body.

        Raises:
            ServiceUnavailableError: Connection refused or connect timeout.
            InferenceTimeoutError: The server accepted but did not answer in time.
            ModelNotFoundError: 404 / "not found" responses.
            PermissionDeniedError: 401 / 403 responses.
            InferenceError: Any other failed request or malformed body.
        """
        client = self._get_client()

        try:
            response = await client.request(
                method,
                path,
                json=json,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.ConnectTimeout as e:
            raise ServiceUnavailableError(
                f"Inference server at {self.base_url} did not accept the connection: {e}",
                model_id,
            ) from e
        except httpx.TimeoutException as e:
            raise InferenceTimeoutError(
                f"Request {method} {path} timed out: {e}", model_id
            ) from e
        except httpx.TransportError as e:
            raise ServiceUnavailableError(
                f"Inference server at {self.base_url} is unreachable: {e}", model_id
            ) from e

        _raise_for_status(response, model_id)

        try:
            return response.json()
        except ValueError as e:
            raise InferenceError(f"Invalid JSON from {path}: {e}", model_id) from e

    async def is_reachable(self, timeout: float = 2.0) -> bool:
        """Return True if the server answers `/api/tags` within `timeout`."""
        try:
            await self.request("GET", "/api/tags", timeout=timeout)
        except InferenceError as e:
            logger.debug(f"Inference server not reachable at {self.base_url}: {e}")
            return False
        return True

    async def list_models(self, timeout: Optional[float] = None) -> List[RemoteModel]:
        """List installed models."""
        data = await self.request("GET", "/api/tags", timeout=timeout)
        return [RemoteModel.from_dict(m) for m in data.get("models") or [] if m.get("name")]

    async def version(self, timeout: Optional[float] = None) -> Optional[str]:
        """Server version string, or None if the server does not report one."""
        try:
            data = await self.request("GET", "/api/version", timeout=timeout)
        except InferenceError as e:
            logger.debug(f"Could not read server version: {e}")
            return None
        return data.get("version")

    async def has_model(self, model_id: str) -> bool:
        """Return True if `model_id` is installed (tag-insensitive)."""
        models = await self.list_models()
        return any(model_name_matches(model_id, m.name) for m in models)

    def client(
        self,
        model_id: str,
        method: Optional[CalculationMethod] = None,
        latency_epsilon: float = LATENCY_EPSILON,
    ) -> "RemoteInferenceClient":
        """Create an inference client for one model on this server."""
        return RemoteInferenceClient(self, model_id, method=method, latency_epsilon=latency_epsilon)

    def __repr__(self) -> str:
        return f"RemoteServer(base_url='{self.base_url}')"


class RemoteInferenceClient:
    """
    Inference client for one model on a `RemoteServer`.

    If no calculation method is supplied, the first scoring call probes the
    server once and remembers the answer. If exact scoring was requested but
    the server stops returning log-probabilities, the client switches to the
    latency fallback for the rest of its life and reports that via `method`.

    Attributes:
        model_id: Model name as known to the server.
        backend: Always `Backend.REMOTE`.
    """

    backend = Backend.REMOTE

    def __init__(
        self,
        server: RemoteServer,
        model_id: str,
        method: Optional[CalculationMethod] = None,
        probe_prompt: str = PROBE_PROMPT,
        latency_epsilon: float = LATENCY_EPSILON,
    ):
        self.server = server
        self.model_id = model_id
        self.probe_prompt = probe_prompt
        self.latency_epsilon = latency_epsilon
        self._method = method

    @property
    def method(self) -> Optional[CalculationMethod]:
        return self._method

    async def probe_logprob_support(self, timeout: Optional[float] = None) -> bool:
        """
        Send the canonical capability probe.

        Returns:
            True if the response carries a non-empty `logprobs` array.
        """
        payload = {
            "model": self.model_id,
            "prompt": self.probe_prompt,
            "stream": False,
            "logprobs": True,
            "options": {"num_predict": 1, "temperature": 0},
        }
        data = await self.server.request(
            "POST", "/api/generate", json=payload, timeout=timeout, model_id=self.model_id
        )
        return bool(data.get("logprobs"))

    async def resolve_method(self) -> CalculationMethod:
        """Return the calculation method, probing the server if unknown."""
        if self._method is None:
            supported = await self.probe_logprob_support()
            self._method = (
                CalculationMethod.EXACT_LOGPROB if supported else CalculationMethod.LATENCY_FALLBACK
            )
            logger.info(f"{self.model_id}: using {self._method.value}")
        return self._method

    async def generate(self, prompt: str, max_new_tokens: int = 128, temperature: float = 0.7) -> str:
        """Generate a completion for `prompt`."""
        payload = {
            "model": self.model_id,
            "prompt": prompt,
            "stream": False,
            "options": {"num_predict": max_new_tokens, "temperature": temperature},
        }
        data = await self.server.request(
            "POST", "/api/generate", json=payload, model_id=self.model_id
        )
        return str(data.get("response", ""))

    def _seconds_per_token(self, data: Dict[str, Any], sentence: str, elapsed: float) -> float:
        duration = data.get("prompt_eval_duration") or 0
        count = data.get("prompt_eval_count") or 0
        if duration > 0 and count > 0:
            return duration / count / 1e9
        return elapsed / estimate_token_count(sentence)

    async def evaluate(self, sentence: str) -> LogProbResult:
        """
        Score `sentence` and report which method produced the score.

        Raises:
            InferenceError: Any transport or HTTP failure (see `RemoteServer.request`).
        """
        method = await self.resolve_method()
        want_logprobs = method == CalculationMethod.EXACT_LOGPROB

        payload: Dict[str, Any] = {
            "model": self.model_id,
            "prompt": sentence,
            "stream": False,
            "options": {"num_predict": 0, "temperature": 0},
        }
        if want_logprobs:
            payload["logprobs"] = True

        start = time.perf_counter()
        data = await self.server.request(
            "POST", "/api/generate", json=payload, model_id=self.model_id
        )
        elapsed = time.perf_counter() - start

        if want_logprobs:
            logprobs = data.get("logprobs") or []
            if logprobs:
                total = sum(float(entry["logprob"]) for entry in logprobs)
                return LogProbResult(value=total, method=CalculationMethod.EXACT_LOGPROB)

            logger.warning(
                f"{self.model_id}: no logprobs in response, switching to latency fallback"
            )
            self._method = CalculationMethod.LATENCY_FALLBACK

        seconds_per_token = self._seconds_per_token(data, sentence, elapsed)
        return LogProbResult(
            value=pseudo_logprob_from_latency(seconds_per_token, self.latency_epsilon),
            method=CalculationMethod.LATENCY_FALLBACK,
        )

    async def get_log_prob(self, sentence: str) -> float:
        """Sentence score (exact log-likelihood or latency pseudo log-probability)."""
        return (await self.evaluate(sentence)).value

    async def close(self) -> None:
        """Nothing to release; the server owns the connection pool."""

    def __repr__(self) -> str:
        method = self._method.value if self._method else "unknown"
        return f"RemoteInferenceClient(model='{self.model_id}', method='{method}')"
