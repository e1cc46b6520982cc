# File: euconform_bias/models/local_hf.py
"""
In-process inference backend for HuggingFace causal language models.

The local backend always exposes the full output distribution, so it scores
sentences with exact log-probabilities: one forward pass, then the sum of the
next-token log-probabilities over every position except the first.

## Loading

Model weights are loaded lazily on first use and exactly once per client:

- concurrent first callers wait on the same in-flight load;
- a failed load is remembered and re-raised, never retried;
- once loaded, the model is reused for the lifetime of the client.

The runtime itself is an injected *loader* (`model_id, device -> LoadedModel`),
which keeps everything above it testable without downloading weights. The
default loader imports `transformers` on demand; if it is not installed the
client reports `BackendUnavailableError` instead of crashing at import time.

## Usage

```python
from euconform_bias.models.local_hf import LocalInferenceClient

client = LocalInferenceClient("distilgpt2", device="cpu")
score = await client.get_log_prob("Der Mann ist Ingenieur.")
```
"""

import asyncio
import importlib.util
import logging
import math
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Optional

import torch

from euconform_bias.errors import BackendUnavailableError, InferenceError

from .schema import Backend, CalculationMethod, LogProbResult

logger = logging.getLogger(__name__)


@dataclass
class LoadedModel:
    """
    A tokenizer/model pair ready for inference.

    Attributes:
        tokenizer: Callable tokenizer returning `{"input_ids": tensor}`.
        model: Causal LM returning an object with a `.logits` tensor.
        device: Device the model lives on.
    """

    tokenizer: Any
    model: Any
    device: str = "cpu"


ModelLoader = Callable[[str, str], LoadedModel]


def local_runtime_available() -> bool:
    """Return True if the `transformers` runtime can be imported."""
    return importlib.util.find_spec("transformers") is not None


def resolve_device(device: str) -> str:
    """
    Resolve "auto" to the best available device.

    Args:
        device: "cpu", "cuda", "mps", or "auto".

    Returns:
        Concrete device name.
    """
    if device != "auto":
        return device

    if torch.cuda.is_available():
        return "cuda"
    if torch.backends.mps.is_available():
        return "mps"
    return "cpu"


def load_hf_causal_lm(model_id: str, device: str = "auto", use_fp16: bool = False) -> LoadedModel:
    """
    Load a HuggingFace causal LM and its tokenizer.

    Args:
        model_id: HuggingFace model identifier (e.g., "distilgpt2").
        device: Device for inference ("cpu", "cuda", "mps", or "auto").
        use_fp16: Whether to use FP16 precision on CUDA.

    Returns:
        LoadedModel in evaluation mode on the resolved device.

    Raises:
        BackendUnavailableError: If `transformers` is missing or loading fails.
    """
    if not local_runtime_available():
        raise BackendUnavailableError(
            "The local model runtime is not installed (missing 'transformers').",
            model_id,
        )

    from transformers import AutoModelForCausalLM, AutoTokenizer

    device = resolve_device(device)
    logger.info(f"Loading local model: {model_id} on {device}")

    try:
        tokenizer = AutoTokenizer.from_pretrained(model_id)

        # GPT-2 style tokenizers have no pad token
        if tokenizer.pad_token is None:
            tokenizer.pad_token = tokenizer.eos_token

        model = AutoModelForCausalLM.from_pretrained(model_id)
        model.to(device)
        model.eval()

        if use_fp16 and device == "cuda":
            model.half()

    except Exception as e:
        raise BackendUnavailableError(f"Error loading model {model_id}: {e}", model_id) from e

    logger.info(f"Successfully loaded {model_id}")
    return LoadedModel(tokenizer=tokenizer, model=model, device=device)


def sequence_log_likelihood(logits: torch.Tensor, token_ids: torch.Tensor) -> float:
    """
    Total log-likelihood of a token sequence under a causal LM.

    Row `i` of `logits` predicts token `i + 1`, so the first token contributes
    nothing. Each row is normalised with a max-subtracted log-sum-exp.

    Args:
        logits: `[seq_len, vocab]` (or `[1, seq_len, vocab]`) next-token logits.
        token_ids: `[seq_len]` (or `[1, seq_len]`) token ids of the sentence.

    Returns:
        Sum of `log_softmax(logits[i])[token_ids[i + 1]]` for i in 0..seq_len-2;
        0.0 for sequences shorter than two tokens.

    Examples:
        >>> logits = torch.zeros(3, 4)   # uniform over a 4-token vocabulary
        >>> round(sequence_log_likelihood(logits, torch.tensor([0, 1, 2])), 4)
        -2.7726
    """
    if logits.dim() == 3:
        logits = logits[0]
    if token_ids.dim() == 2:
        token_ids = token_ids[0]

    if token_ids.size(0) < 2:
        return 0.0

    shift_logits = logits[:-1].float()
    targets = token_ids[1:].long()

    max_logits = shift_logits.max(dim=-1, keepdim=True).values
    log_norm = max_logits + torch.log(torch.exp(shift_logits - max_logits).sum(dim=-1, keepdim=True))

    target_logits = shift_logits.gather(-1, targets.unsqueeze(-1))
    return float((target_logits - log_norm).sum().item())


class LocalInferenceClient:
    """
    Inference client backed by an in-process causal language model.

    Attributes:
        model_id: HuggingFace model identifier.
        device: Requested device ("auto" is resolved by the loader).
        backend: Always `Backend.LOCAL`.

    Examples:
        >>> client = LocalInferenceClient("distilgpt2", device="cpu")
        >>> await client.get_log_prob("Die Frau ist Ingenieurin.")
        -38.91...
    """

    backend = Backend.LOCAL

    def __init__(
        self,
        model_id: str,
        device: str = "auto",
        loader: Optional[ModelLoader] = None,
        use_fp16: bool = False,
    ):
        self.model_id = model_id
        self.device = device
        self._loader = loader or partial(load_hf_causal_lm, use_fp16=use_fp16)
        self._loaded: Optional[LoadedModel] = None
        self._load_error: Optional[BackendUnavailableError] = None
        self._load_lock = asyncio.Lock()
        self._closed = False

    @property
    def method(self) -> CalculationMethod:
        return CalculationMethod.EXACT_LOGPROB

    @property
    def is_loaded(self) -> bool:
        return self._loaded is not None

    async def load(self) -> None:
        """
        Load the model if needed.

        Raises:
            BackendUnavailableError: If loading fails now or failed earlier.
            InferenceError: If the client has been closed.
        """
        if self._closed:
            raise InferenceError(f"Client for {self.model_id} is closed", self.model_id)
        if self._loaded is not None:
            return

        async with self._load_lock:
            if self._loaded is not None:
                return
            if self._load_error is not None:
                raise self._load_error

            try:
                loaded = await asyncio.to_thread(self._loader, self.model_id, self.device)
            except BackendUnavailableError as e:
                self._load_error = e
                raise
            except Exception as e:
                self._load_error = BackendUnavailableError(
                    f"Error loading model {self.model_id}: {e}", self.model_id
                )
                raise self._load_error from e

            self._loaded = loaded

    def _score_sentence(self, sentence: str) -> float:
        loaded = self._loaded
        inputs = loaded.tokenizer(sentence, return_tensors="pt")
        input_ids = inputs["input_ids"].to(loaded.device)

        with torch.no_grad():
            outputs = loaded.model(input_ids)

        return sequence_log_likelihood(outputs.logits, input_ids)

    async def evaluate(self, sentence: str) -> LogProbResult:
        """Score a sentence; the method is always exact-logprob."""
        await self.load()

        try:
            value = await asyncio.to_thread(self._score_sentence, sentence)
        except Exception as e:
            raise InferenceError(
                f"Log-probability computation failed for {self.model_id}: {e}", self.model_id
            ) from e

        return LogProbResult(value=value, method=CalculationMethod.EXACT_LOGPROB)

    async def get_log_prob(self, sentence: str) -> float:
        """Total log-likelihood of `sentence`."""
        return (await self.evaluate(sentence)).value

    async def perplexity(self, sentence: str) -> float:
        """
        Per-token perplexity of `sentence`.

        Returns `inf` when the sentence has fewer than two tokens.
        """
        await self.load()
        loaded = self._loaded
        token_count = loaded.tokenizer(sentence, return_tensors="pt")["input_ids"].size(-1)
        if token_count < 2:
            return math.inf

        log_prob = await self.get_log_prob(sentence)
        return math.exp(-log_prob / (token_count - 1))

    def _generate_sync(self, prompt: str, max_new_tokens: int, temperature: float) -> str:
        loaded = self._loaded
        inputs = loaded.tokenizer(prompt, return_tensors="pt")
        input_ids = inputs["input_ids"].to(loaded.device)
        prompt_length = input_ids.size(1)

        gen_kwargs = {
            "max_new_tokens": max_new_tokens,
            "do_sample": temperature > 0,
            "pad_token_id": loaded.tokenizer.pad_token_id,
        }
        if temperature > 0:
            gen_kwargs["temperature"] = temperature

        with torch.no_grad():
            outputs = loaded.model.generate(input_ids, **gen_kwargs)

        # Decode only the continuation
        return loaded.tokenizer.decode(outputs[0, prompt_length:], skip_special_tokens=True)

    async def generate(self, prompt: str, max_new_tokens: int = 32, temperature: float = 0.0) -> str:
        """
        Generate a continuation for `prompt` (prompt text not included).

        Raises:
            InferenceError: If generation fails.
        """
        await self.load()

        try:
            return await asyncio.to_thread(self._generate_sync, prompt, max_new_tokens, temperature)
        except Exception as e:
            raise InferenceError(f"Generation failed for {self.model_id}: {e}", self.model_id) from e

    async def close(self) -> None:
        """Release the model. The client cannot be used afterwards."""
        self._closed = True
        self._loaded = None

    def __repr__(self) -> str:
        return (
            f"LocalInferenceClient(model='{self.model_id}', "
            f"device='{self.device}', loaded={self.is_loaded})"
        )
