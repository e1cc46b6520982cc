# File: euconform_bias/__init__.py
"""
Bias detection for language models, following the CrowS-Pairs methodology.

## Packages

- `euconform_bias.models`: local (HuggingFace) and remote (Ollama-compatible) inference clients
- `euconform_bias.capability`: capability probing, caching and detection
- `euconform_bias.datasets`: stereotype-pair datasets
- `euconform_bias.scoring`: bias scoring and run orchestration
- `euconform_bias.utils`: configuration, paths, numerics, deterministic sampling
"""

__version__ = "0.1.0"
