# File: euconform_bias/models/schema.py
"""
Shared vocabulary for the inference backends.

Two discriminants drive dispatch throughout the engine:

- `Backend` says *where* a model runs: `local` (in-process HuggingFace
  runtime) or `remote` (an external inference server).
- `CalculationMethod` says *how* a sentence score is obtained:
  `exact-logprob` (summed next-token log-probabilities) or `latency-fallback`
  (a pseudo log-probability derived from evaluation speed).

Code branches on these values, never on the concrete client class.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Backend(str, Enum):
    """Where a model is executed."""

    LOCAL = "local"
    REMOTE = "remote"


class CalculationMethod(str, Enum):
    """How sentence scores are computed for a model."""

    EXACT_LOGPROB = "exact-logprob"
    LATENCY_FALLBACK = "latency-fallback"


@dataclass(frozen=True)
class LogProbResult:
    """
    Score of one sentence together with the method that produced it.

    Attributes:
        value: Total log-likelihood (exact) or pseudo log-probability (fallback).
        method: Calculation method actually used for this sentence.
    """

    value: float
    method: CalculationMethod
