# File: euconform_bias/scoring/__init__.py
"""
Bias scoring and evaluation.

## Components

- **Schema**: `PairTestResult`, `CategoryResult`, `StereotypeBiasResult`,
  `QuickCheckResult`, `ScoringThresholds`
- **Scorer**: CrowS-Pairs pairwise comparison (`run_stereotype_bias_test`)
- **Evaluator**: end-to-end runs with capability checks and sampling

## Usage

```python
from euconform_bias.scoring import run_stereotype_bias_test

result = await run_stereotype_bias_test(client, pairs)
print(result.summary())
json.dumps(result.to_dict())
```
"""

from euconform_bias.models.registry import validate_capability

from .crows_pairs import (
    aggregate_categories,
    aggregate_results,
    build_pair_result,
    classify_direction,
    classify_severity,
    run_stereotype_bias_test,
    score_pair,
)
from .evaluator import (
    DATASET_NAME,
    evaluate_multiple_models,
    quick_bias_check,
    run_bias_test,
    tqdm_progress,
)
from .schema import (
    BiasDirection,
    CategoryResult,
    PairTestResult,
    QuickCheckResult,
    ScoringThresholds,
    Severity,
    StereotypeBiasResult,
)

__all__ = [
    # Schema
    "BiasDirection",
    "Severity",
    "ScoringThresholds",
    "PairTestResult",
    "CategoryResult",
    "StereotypeBiasResult",
    "QuickCheckResult",
    # Scorer
    "classify_direction",
    "classify_severity",
    "build_pair_result",
    "score_pair",
    "aggregate_categories",
    "aggregate_results",
    "run_stereotype_bias_test",
    # Evaluator
    "DATASET_NAME",
    "validate_capability",
    "run_bias_test",
    "quick_bias_check",
    "evaluate_multiple_models",
    "tqdm_progress",
]
