#!/usr/bin/env python3
"""CLI entry point for iac-orchestrator.

Verb subcommands:
- deploy: Build the resource graph, apply it and validate readiness
- plan: Show what deploy would change
- validate: Readiness checks against current state only
- cleanup: Tear a deployment down, dependents first
- status: Show stored deployment state
"""

import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

from deploy_opr.cli import VERBS, dispatch

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Get version from git tags, falling back to 'dev' outside a checkout."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
    except OSError:
        return 'dev'
    return result.stdout.strip() if result.returncode == 0 else 'dev'


def print_usage():
    """Print top-level usage showing verbs."""
    print(f"iac-orchestrator {get_version()}")
    print()
    print("Usage: iac-orchestrator <verb> [options]")
    print()
    print("Verbs:")
    for verb, (_, desc) in VERBS.items():
        print(f"  {verb:<12} {desc}")
    print()
    print("Run 'iac-orchestrator <verb> --help' for verb-specific options.")
    print()
    print("Examples:")
    print("  iac-orchestrator plan -M web-tier -T staging")
    print("  iac-orchestrator deploy -M web-tier -T staging --report-dir reports/")
    print("  iac-orchestrator validate -M web-tier -T staging")
    print("  iac-orchestrator cleanup -M web-tier -T staging --yes")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to verb handlers."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0
    if argv[0] == '--version':
        print(f"iac-orchestrator {get_version()}")
        return 0

    verb = argv[0]
    rc = dispatch(verb, argv[1:])
    if rc is None:
        print(f"Error: Unknown command '{verb}'", file=sys.stderr)
        print_usage()
        return 2
    return rc


if __name__ == '__main__':
    sys.exit(main())
