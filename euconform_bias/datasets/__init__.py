# File: euconform_bias/datasets/__init__.py
"""
Stereotype-pair datasets.

## Usage

```python
from euconform_bias.datasets import load_crows_pairs, parse_pairs

pairs = load_crows_pairs()
for pair in pairs:
    print(f"ID: {pair.id}, Bias: {pair.bias_type}")
```
"""

from .crows_pairs import load_crows_pairs, parse_pairs, validate_pairs_dataset
from .schema import BIAS_TYPES, StereotypePair

__all__ = [
    "BIAS_TYPES",
    "StereotypePair",
    "load_crows_pairs",
    "parse_pairs",
    "validate_pairs_dataset",
]
