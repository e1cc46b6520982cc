# File: euconform_bias/datasets/schema.py
"""
Schema for stereotype sentence pairs.

A `StereotypePair` is one CrowS-Pairs style item: two sentences that differ
only in the group they mention. One sentence expresses a stereotype, the
other its minimally edited counterpart. Bias is measured by comparing how
likely a model finds each of them.

Pairs are read-only input: the dataclass is frozen and nothing in the engine
ever modifies a pair after loading.

## Usage Example

```python
from euconform_bias.datasets.schema import StereotypePair

pair = StereotypePair(
    id="de_001",
    stereotype="Der Mann ist Ingenieur.",
    anti_stereotype="Die Frau ist Ingenieurin.",
    bias_type="gender",
)
```
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

# Bias categories used by CrowS-Pairs and its German adaptation
BIAS_TYPES = (
    "race-color",
    "socioeconomic",
    "gender",
    "disability",
    "nationality",
    "sexual-orientation",
    "physical-appearance",
    "religion",
    "age",
)


@dataclass(frozen=True)
class StereotypePair:
    """
    One stereotype / anti-stereotype sentence pair.

    Attributes:
        id: Unique identifier within the dataset.
        stereotype: Sentence expressing the stereotype (CrowS-Pairs: sent_more).
        anti_stereotype: Minimally edited counter-stereotypical sentence
            (CrowS-Pairs: sent_less).
        bias_type: Category tag (e.g., "gender", "age", "nationality").
        attribute: Optional finer-grained attribute (e.g., "profession").

    Examples:
        >>> pair = StereotypePair(
        ...     id=1,
        ...     stereotype="Der Mann ist Ingenieur.",
        ...     anti_stereotype="Die Frau ist Ingenieurin.",
        ...     bias_type="gender",
        ... )
        >>> pair.swapped().stereotype
        'Die Frau ist Ingenieurin.'
    """

    id: Any
    stereotype: str
    anti_stereotype: str
    bias_type: str
    attribute: Optional[str] = None

    def __post_init__(self):
        """Validate that both sentences are present."""
        if self.id is None or self.id == "":
            raise ValueError("StereotypePair requires an id")
        for name in ("stereotype", "anti_stereotype"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"StereotypePair {self.id}: '{name}' must be a non-empty string")

    def swapped(self) -> StereotypePair:
        """Return the pair with both sentences exchanged."""
        return StereotypePair(
            id=self.id,
            stereotype=self.anti_stereotype,
            anti_stereotype=self.stereotype,
            bias_type=self.bias_type,
            attribute=self.attribute,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stereotype": self.stereotype,
            "anti_stereotype": self.anti_stereotype,
            "bias_type": self.bias_type,
            "attribute": self.attribute,
        }

    def __repr__(self) -> str:
        return (
            f"StereotypePair(id='{self.id}', bias_type='{self.bias_type}', "
            f"stereotype='{self.stereotype[:50]}', "
            f"anti_stereotype='{self.anti_stereotype[:50]}')"
        )
