# File: euconform_bias/utils/random_utils.py
"""
Reproducibility utilities: seeded pair sampling and global seeding.

Bias reports must be independently reproducible, including by tools written in
other languages. Pair subsets are therefore drawn with **mulberry32**, a tiny
32-bit PRNG whose output is fully specified by its integer arithmetic, driving a
Fisher-Yates shuffle. Given the same seed and input order, every conforming
implementation selects the same pairs in the same order.

## Usage

```python
from euconform_bias.utils.random_utils import Mulberry32, seeded_sample

rng = Mulberry32(42)
rng()            # 0.6011037519...

subset = seeded_sample(pairs, 100, seed=42)   # identical on every run
```
"""

import random
from typing import Callable, List, Optional, Sequence, TypeVar

import numpy as np
import torch

T = TypeVar("T")

UINT32_MASK = 0xFFFFFFFF
MULBERRY32_INCREMENT = 0x6D2B79F5
DEFAULT_SEED = 42


def _imul(a: int, b: int) -> int:
    """32-bit integer multiply, keeping the low 32 bits (unsigned)."""
    return (a * b) & UINT32_MASK


class Mulberry32:
    """
    Seeded mulberry32 pseudo-random generator.

    The state is a single unsigned 32-bit integer. Each draw advances the state
    by a fixed odd increment and mixes it with multiply/xor-shift steps.

    Attributes:
        state: Current 32-bit state.

    Examples:
        >>> rng = Mulberry32(1)
        >>> rng.next_uint32()
        2693262067
        >>> Mulberry32(1)() == 2693262067 / 4294967296
        True
    """

    def __init__(self, seed: int = DEFAULT_SEED):
        self.state = seed & UINT32_MASK

    def next_uint32(self) -> int:
        """Advance the generator and return the raw 32-bit output."""
        self.state = (self.state + MULBERRY32_INCREMENT) & UINT32_MASK
        t = self.state
        t = _imul(t ^ (t >> 15), t | 1)
        t ^= (t + _imul(t ^ (t >> 7), t | 61)) & UINT32_MASK
        return (t ^ (t >> 14)) & UINT32_MASK

    def next_float(self) -> float:
        """Return the next value in [0, 1)."""
        return self.next_uint32() / 4294967296

    def __call__(self) -> float:
        return self.next_float()


def seeded_shuffle(
    items: Sequence[T],
    seed: int = DEFAULT_SEED,
    rng: Optional[Callable[[], float]] = None,
) -> List[T]:
    """
    Fisher-Yates shuffle of a copy of `items`, driven by mulberry32.

    Args:
        items: Sequence to shuffle (not modified).
        seed: Seed for a fresh `Mulberry32` (ignored if `rng` is given).
        rng: Optional generator returning floats in [0, 1).

    Returns:
        A new list with the shuffled items.
    """
    rng = rng or Mulberry32(seed)
    shuffled = list(items)

    for i in range(len(shuffled) - 1, 0, -1):
        j = int(rng() * (i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]

    return shuffled


def seeded_sample(items: Sequence[T], n: int, seed: int = DEFAULT_SEED) -> List[T]:
    """
    Deterministically select `n` items.

    Shuffles the full sequence with `seeded_shuffle` and keeps the first
    `min(n, len(items))` elements. Sampling is uniform; there is no
    stratification by bias type.

    Args:
        items: Items to sample from.
        n: Target sample size.
        seed: Integer seed (taken modulo 2**32).

    Returns:
        List of sampled items, identical for identical inputs.

    Raises:
        ValueError: If `n` is negative.

    Examples:
        >>> seeded_sample(list(range(10)), 5, seed=42)
        [0, 7, 3, 5, 2]
    """
    if n < 0:
        raise ValueError(f"Sample size must be non-negative, got {n}")

    return seeded_shuffle(items, seed)[: min(n, len(items))]


def set_global_seed(seed: int, deterministic_cudnn: bool = True) -> None:
    """
    Set random seeds for Python, NumPy, and PyTorch.

    Log-probability scoring is a deterministic forward pass, but generation and
    any sampling done by downstream tooling are not. Seeding everything up front
    keeps CLI runs repeatable.

    Args:
        seed: The random seed to use across all libraries.
        deterministic_cudnn: If True, sets cuDNN to deterministic mode.
            This may reduce performance but ensures reproducibility.

    Examples:
        >>> set_global_seed(42)
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)

    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)

    torch.backends.cudnn.deterministic = deterministic_cudnn
    torch.backends.cudnn.benchmark = not deterministic_cudnn
