#!/usr/bin/env python3
"""
Sync launcher script.

Runs the airdrop sync loop with the dev.yaml configuration. Pass --once to
run a single cycle, or --with-stability to also poll trade stability.
"""

import asyncio
import sys
from pathlib import Path

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from alphahub.runner.pipeline import main


if __name__ == "__main__":
    extra_args = sys.argv[1:]
    sys.argv = ["alphahub", "--config", "configs/dev.yaml", "--profile", "dev", *extra_args]

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nSync stopped by user.")
        sys.exit(0)
