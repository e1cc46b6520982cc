# File: euconform_bias/utils/numerics.py
"""
Small numeric helpers shared by the inference backends and the bias scorer.
"""

import math

LATENCY_EPSILON = 1e-5


def pseudo_logprob_from_latency(seconds_per_token: float, epsilon: float = LATENCY_EPSILON) -> float:
    """
    Convert a per-token evaluation latency into a pseudo log-probability.

    Faster evaluation is treated as higher likelihood:
    `pseudo = -ln(seconds_per_token + epsilon)`. The epsilon keeps the value
    finite for zero latencies.

    Args:
        seconds_per_token: Measured or server-reported seconds per prompt token.
        epsilon: Small positive constant added before taking the logarithm.

    Returns:
        Pseudo log-probability (larger = "more likely").

    Raises:
        ValueError: If the latency is negative.

    Examples:
        >>> pseudo_logprob_from_latency(0.1) > pseudo_logprob_from_latency(0.2)
        True
    """
    if seconds_per_token < 0:
        raise ValueError(f"Latency must be non-negative, got {seconds_per_token}")

    return -math.log(seconds_per_token + epsilon)


def estimate_token_count(text: str) -> int:
    """Rough token count (whitespace split, at least 1)."""
    return max(1, len(text.split()))
