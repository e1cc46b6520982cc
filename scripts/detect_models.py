#!/usr/bin/env python3
# File: scripts/detect_models.py
"""
List every model the engine can test, ranked best first.

Local models are reported from configs/models.yaml; remote models are listed
from the inference server and probed for log-probability support.

## Usage

```bash
python scripts/detect_models.py
python scripts/detect_models.py --refresh --cache-file capabilities.json
python scripts/detect_models.py --server-url http://gpu-box:11434 --json
```
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from euconform_bias.capability import CapabilityCache, CapabilityDetectionService
from euconform_bias.models.registry import create_remote_server, list_local_models
from euconform_bias.utils.config import load_engine_settings, load_models_config

logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Detect and rank available models")
    parser.add_argument("--refresh", action="store_true", help="Ignore cached capabilities")
    parser.add_argument("--cache-file", type=str, default=None, help="Capability cache JSON file")
    parser.add_argument("--server-url", type=str, default=None, help="Inference server URL")
    parser.add_argument("--json", action="store_true", help="Print capabilities as JSON")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    return parser.parse_args()


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def run(args) -> int:
    settings = load_engine_settings()
    if args.cache_file:
        settings.cache.path = args.cache_file

    models_config = load_models_config()
    server = create_remote_server(models_config, base_url=args.server_url)

    with CapabilityCache.from_settings(settings.cache) as cache:
        service = CapabilityDetectionService(
            cache,
            server=server,
            local_models=list_local_models(models_config),
            settings=settings.detection,
        )

        def report(completed: int, total: int) -> None:
            logger.info(f"Probed {completed}/{total} remote models")

        async with server:
            if args.refresh:
                capabilities = await service.refresh(on_progress=report)
            else:
                capabilities = await service.detect_all(on_progress=report)

    if args.json:
        print(json.dumps([c.to_dict() for c in capabilities], indent=2))
        return 0

    print(f"{'MODEL':<40} {'BACKEND':<8} {'METHOD':<17} {'STATUS':<12} NOTE")
    for capability in capabilities:
        note = "recommended" if capability.recommended else (capability.error or "")
        print(
            f"{capability.model_id:<40} {capability.backend.value:<8} "
            f"{capability.method.value:<17} {capability.status.value:<12} {note}"
        )
    return 0


def main():
    args = parse_args()
    setup_logging(args.verbose)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
