#!/usr/bin/env python3
# File: scripts/run_eval.py
"""
Driver script for running a CrowS-Pairs bias test on one model.

This script orchestrates the complete run:
1. Load engine settings and model configuration
2. Load and validate the pair dataset
3. Resolve the model's capability (cached or freshly detected)
4. Score a deterministic sample of pairs
5. Write the result to a JSON file in results/

## Usage

```bash
# Local HuggingFace model, every pair of the bundled sample
python scripts/run_eval.py --model distilgpt2

# Server-hosted model, 100 sampled pairs
python scripts/run_eval.py --model llama3.2:1b --backend remote --max-pairs 100

# Custom dataset, server and persistent capability cache
python scripts/run_eval.py --model mistral --backend remote \
    --data data/crows_pairs/crows_pairs_de.csv \
    --server-url http://gpu-box:11434 --cache-file capabilities.json
```

## Output

Results are written to `results/{model_id}__crows_pairs.json` unless
`--output` is given. The exit status is non-zero if the run could not be
completed (invalid dataset, unavailable model, every pair failed).
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from tqdm import tqdm

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from euconform_bias.capability import CapabilityCache, CapabilityDetectionService
from euconform_bias.datasets import load_crows_pairs
from euconform_bias.errors import BiasEngineError
from euconform_bias.models import Backend, InferenceClientRegistry
from euconform_bias.models.registry import create_remote_server, list_local_models
from euconform_bias.scoring import ScoringThresholds, run_bias_test, tqdm_progress
from euconform_bias.utils.config import load_engine_settings, load_models_config
from euconform_bias.utils.paths import ensure_dir_exists, get_results_dir
from euconform_bias.utils.random_utils import set_global_seed

logger = logging.getLogger(__name__)


def parse_args():
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Run the CrowS-Pairs bias test on a language model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    # Model selection
    parser.add_argument(
        "--model",
        type=str,
        required=True,
        help="Model ID (HuggingFace id for local models, server model name for remote ones)",
    )

    parser.add_argument(
        "--backend",
        type=str,
        default=None,
        choices=[b.value for b in Backend],
        help="Where the model runs (default: local if configured in models.yaml, else remote)",
    )

    # Data
    parser.add_argument(
        "--data",
        type=str,
        default=None,
        help="Pair dataset (.json, .csv, .tsv). Default: bundled German sample",
    )

    parser.add_argument(
        "--max-pairs",
        type=int,
        default=None,
        help="Number of pairs to sample (default: all pairs)",
    )

    # Reproducibility
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Sampling seed (default: from configs/engine.yaml, 42)",
    )

    # Infrastructure
    parser.add_argument(
        "--server-url",
        type=str,
        default=None,
        help="Inference server URL (default: EUCONFORM_REMOTE_URL or configs/models.yaml)",
    )

    parser.add_argument(
        "--cache-file",
        type=str,
        default=None,
        help="JSON file for persisting detected capabilities between runs",
    )

    parser.add_argument(
        "--device",
        type=str,
        default=None,
        choices=["cpu", "cuda", "mps", "auto"],
        help="Device for local models (default: from configs/engine.yaml)",
    )

    # Output settings
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Result file (default: results/{model}__crows_pairs.json)",
    )

    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    return parser.parse_args()


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def select_backend(model_id: str, requested: Optional[str], local_models: list) -> Backend:
    """Pick the backend: explicit choice, else local if the model is configured locally."""
    if requested:
        return Backend(requested)
    if any(m["id"] == model_id for m in local_models):
        return Backend.LOCAL
    return Backend.REMOTE


def default_output_path(model_id: str) -> Path:
    safe_name = model_id.replace("/", "_").replace(":", "_")
    return get_results_dir() / f"{safe_name}__crows_pairs.json"


def write_result(result, output_path: Path):
    """Write a StereotypeBiasResult as pretty-printed JSON."""
    ensure_dir_exists(output_path.parent)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(result.to_dict(), f, indent=2, ensure_ascii=False)
    logger.info(f"Wrote result to {output_path}")


async def run(args) -> int:
    settings = load_engine_settings()
    if args.cache_file:
        settings.cache.path = args.cache_file

    models_config = load_models_config()
    local_models = list_local_models(models_config)
    seed = args.seed if args.seed is not None else settings.seed
    backend = select_backend(args.model, args.backend, local_models)

    set_global_seed(seed)

    server = create_remote_server(models_config, base_url=args.server_url)
    cache = CapabilityCache.from_settings(settings.cache)
    service = CapabilityDetectionService(
        cache,
        server=server,
        local_models=local_models,
        settings=settings.detection,
    )

    logger.info("=" * 70)
    logger.info(f"Bias test: {args.model} ({backend.value})")
    logger.info("=" * 70)

    async with InferenceClientRegistry(
        server=server,
        device=args.device or settings.device,
        latency_epsilon=settings.scoring.latency_epsilon,
    ) as registry:
        try:
            pairs = load_crows_pairs(args.data)

            with tqdm(desc=f"Scoring {args.model}", unit="pair") as bar:
                result = await run_bias_test(
                    args.model,
                    backend,
                    pairs,
                    detection_service=service,
                    registry=registry,
                    max_pairs=args.max_pairs,
                    seed=seed,
                    thresholds=ScoringThresholds.from_settings(settings.scoring),
                    batch_size=settings.scoring.batch_size,
                    on_progress=tqdm_progress(bar),
                )
        except (BiasEngineError, OSError, ValueError) as e:
            logger.error(f"Bias test failed: {e}")
            return 1
        finally:
            cache.close()

    print(result.summary())
    for category in result.category_results:
        verdict = "PASS" if category.passed else "FAIL"
        print(
            f"  {category.bias_type:<20} {verdict}  "
            f"pref={category.stereotype_preference:6.2f}%  "
            f"mean={category.mean_score:+.4f}  n={category.pair_count}"
        )

    output_path = Path(args.output) if args.output else default_output_path(args.model)
    write_result(result, output_path)
    return 0


def main():
    """Main entry point."""
    args = parse_args()
    setup_logging(args.verbose)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
