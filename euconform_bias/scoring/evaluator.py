# File: euconform_bias/scoring/evaluator.py
"""
Bias-test orchestration.

This module ties capability detection, the inference client registry, the
deterministic sampler and the CrowS-Pairs scorer together into complete runs.

## Usage

```python
from euconform_bias.capability import CapabilityCache, CapabilityDetectionService
from euconform_bias.datasets import load_crows_pairs
from euconform_bias.models import Backend, InferenceClientRegistry
from euconform_bias.scoring.evaluator import run_bias_test

registry = InferenceClientRegistry(server_url="http://localhost:11434")
service = CapabilityDetectionService(CapabilityCache(), server=registry.server)

result = await run_bias_test(
    "llama3.2:1b",
    Backend.REMOTE,
    load_crows_pairs(),
    detection_service=service,
    registry=registry,
    max_pairs=100,
    seed=42,
)
print(result.summary())
```

A run is refused with `ModelUnavailableError` unless the resolved capability
is `available` and matches the requested model and backend. Datasets are
validated before anything touches a model.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from tqdm import tqdm

from euconform_bias.capability.service import CapabilityDetectionService
from euconform_bias.datasets.crows_pairs import parse_pairs
from euconform_bias.datasets.schema import StereotypePair
from euconform_bias.errors import BiasEngineError
from euconform_bias.models.registry import InferenceClientRegistry
from euconform_bias.models.schema import Backend
from euconform_bias.utils.config import load_engine_settings
from euconform_bias.utils.random_utils import DEFAULT_SEED, seeded_sample

from .crows_pairs import DEFAULT_BATCH_SIZE, ProgressCallback, run_stereotype_bias_test
from .schema import QuickCheckResult, ScoringThresholds, StereotypeBiasResult

logger = logging.getLogger(__name__)

DATASET_NAME = "CrowS-Pairs-DE (compatible)"


def ensure_pairs(pairs: Sequence[Any], dataset_name: str = DATASET_NAME) -> List[StereotypePair]:
    """
    Return `pairs` as validated StereotypePair objects.

    Already-built pairs pass through; raw records are parsed and validated as
    a whole.

    Raises:
        InvalidDatasetError: If any raw record is malformed.
    """
    pairs = list(pairs)
    if pairs and all(isinstance(p, StereotypePair) for p in pairs):
        return pairs
    return parse_pairs(
        [p.to_dict() if isinstance(p, StereotypePair) else p for p in pairs],
        dataset_name=dataset_name,
    )


def tqdm_progress(bar: tqdm) -> ProgressCallback:
    """Adapt a tqdm bar to the (completed, total) progress callback."""

    def update(completed: int, total: int) -> None:
        if bar.total != total:
            bar.total = total
        bar.update(completed - bar.n)

    return update


async def run_bias_test(
    model_id: str,
    backend: Backend,
    pairs: Sequence[Any],
    *,
    detection_service: CapabilityDetectionService,
    registry: InferenceClientRegistry,
    max_pairs: Optional[int] = None,
    seed: int = DEFAULT_SEED,
    thresholds: Optional[ScoringThresholds] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    on_progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
    dataset_name: str = DATASET_NAME,
) -> StereotypeBiasResult:
    """
    Run a complete CrowS-Pairs bias test for one model.

    Steps: validate the dataset, resolve the model's capability (cache or
    fresh detection), fetch the shared client, sample pairs, score them.

    Args:
        model_id: Model to test.
        backend: Where the model runs.
        pairs: StereotypePair objects or raw records.
        detection_service: Capability source.
        registry: Inference client source.
        max_pairs: Pair budget. Below the dataset size a deterministic sample
            is drawn; None tests every pair.
        seed: Sampler seed.
        thresholds: Classification thresholds.
        batch_size: Pairs scored concurrently per batch.
        on_progress: Called with (completed, total) after each pair.
        cancel_event: Stops the run between batches when set.
        dataset_name: Provenance label for the result.

    Returns:
        StereotypeBiasResult tagged with dataset, seed and sample size.

    Raises:
        InvalidDatasetError: If the dataset is malformed.
        ModelUnavailableError: If the model cannot be tested.
        BiasTestCancelledError: If cancelled.
        NoValidScoresError: If every pair failed.
    """
    backend = Backend(backend)
    pairs = ensure_pairs(pairs, dataset_name)

    capability = await detection_service.resolve(model_id, backend)
    client = registry.get_client_for(capability, model_id, backend)

    if max_pairs is not None and max_pairs < len(pairs):
        selected = seeded_sample(pairs, max_pairs, seed=seed)
        logger.info(f"Sampled {len(selected)} of {len(pairs)} pairs (seed={seed})")
    else:
        selected = pairs

    result = await run_stereotype_bias_test(
        client,
        selected,
        batch_size=batch_size,
        on_progress=on_progress,
        cancel_event=cancel_event,
        thresholds=thresholds,
    )

    result = replace(
        result,
        dataset_name=dataset_name,
        seed=seed,
        sample_size=len(selected),
    )
    logger.info(result.summary())
    return result


async def quick_bias_check(
    client: Any,
    pairs: Sequence[StereotypePair],
    sample_size: Optional[int] = None,
    seed: int = DEFAULT_SEED,
    thresholds: Optional[ScoringThresholds] = None,
) -> QuickCheckResult:
    """
    Screen a model on a small deterministic sample.

    A model shows significant bias when its stereotype preference exceeds
    55 % or its mean score exceeds 0.3 in magnitude. Without an explicit
    `sample_size`, `scoring.quick_check_sample_size` from configs/engine.yaml
    is used.

    Examples:
        >>> check = await quick_bias_check(client, load_crows_pairs(), sample_size=20)
        >>> check.has_significant_bias
        False
    """
    if sample_size is None:
        sample_size = load_engine_settings().scoring.quick_check_sample_size
    thresholds = thresholds or ScoringThresholds()
    sample = seeded_sample(list(pairs), sample_size, seed=seed)

    result = await run_stereotype_bias_test(client, sample, thresholds=thresholds)

    return QuickCheckResult(
        has_significant_bias=(
            result.stereotype_preference > thresholds.overall_preference
            or abs(result.overall_score) > thresholds.magnitude
        ),
        stereotype_preference=result.stereotype_preference,
        average_score=result.overall_score,
        pairs_tested=result.total_pairs,
    )


async def evaluate_multiple_models(
    models: Mapping[str, Backend],
    pairs: Sequence[Any],
    *,
    detection_service: CapabilityDetectionService,
    registry: InferenceClientRegistry,
    max_pairs: Optional[int] = None,
    seed: int = DEFAULT_SEED,
    thresholds: Optional[ScoringThresholds] = None,
    verbose: bool = True,
) -> Dict[str, Optional[StereotypeBiasResult]]:
    """
    Run the bias test for several models, one after another.

    Args:
        models: Mapping of model id to backend.
        pairs: StereotypePair objects or raw records.
        detection_service: Capability source.
        registry: Inference client source.
        max_pairs: Pair budget per model.
        seed: Sampler seed (same sample for every model).
        thresholds: Classification thresholds.
        verbose: If True, show a progress bar per model.

    Returns:
        Mapping of model id to its result, or None if the model failed.

    Raises:
        InvalidDatasetError: If the dataset is malformed (checked once, up front).

    Examples:
        >>> results = await evaluate_multiple_models(
        ...     {"distilgpt2": Backend.LOCAL, "llama3.2:1b": Backend.REMOTE},
        ...     load_crows_pairs(),
        ...     detection_service=service,
        ...     registry=registry,
        ... )
        >>> for model_id, result in results.items():
        ...     print(model_id, result.passed if result else "failed")
    """
    pairs = ensure_pairs(pairs)
    all_results: Dict[str, Optional[StereotypeBiasResult]] = {}

    for model_id, backend in models.items():
        if verbose:
            logger.info(f"{'=' * 70}")
            logger.info(f"Evaluating model: {model_id} ({Backend(backend).value})")
            logger.info(f"{'=' * 70}")

        bar: Optional[tqdm] = tqdm(desc=f"Scoring {model_id}", unit="pair") if verbose else None
        on_progress: Optional[Callable[[int, int], None]] = tqdm_progress(bar) if bar else None

        try:
            all_results[model_id] = await run_bias_test(
                model_id,
                backend,
                pairs,
                detection_service=detection_service,
                registry=registry,
                max_pairs=max_pairs,
                seed=seed,
                thresholds=thresholds,
                on_progress=on_progress,
            )
        except BiasEngineError as e:
            logger.error(f"Failed to evaluate {model_id}: {e}")
            all_results[model_id] = None
        finally:
            if bar is not None:
                bar.close()

    return all_results
