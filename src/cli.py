#!/usr/bin/env python3
"""CLI entry point for iac-engine.

Lifecycle commands operate on a workdir holding stack.yaml:
- iac-engine init
- iac-engine validate --var enable_ai=true
- iac-engine plan --out plan.json
- iac-engine apply --plan plan.json
- iac-engine destroy --auto-approve
- iac-engine output service_url
"""

import logging
import subprocess
import sys
from pathlib import Path

from engine.cli import COMMANDS


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing lifecycle commands."""
    print(f"iac-engine {get_version()}")
    print()
    print("Usage: iac-engine <command> [options]")
    print()
    print("Commands:")
    for command, (_, desc) in COMMANDS.items():
        print(f"  {command:<12} {desc}")
    print()
    print("Run 'iac-engine <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  iac-engine init -C stacks/mcp-http-host")
    print("  iac-engine plan -C stacks/mcp-http-host --var enable_ai=true --out plan.json")
    print("  iac-engine apply -C stacks/mcp-http-host --plan plan.json")
    print("  iac-engine output -C stacks/mcp-http-host service_url")
    print("  iac-engine destroy -C stacks/mcp-http-host --auto-approve")


def main(argv=None):
    """CLI entry point: dispatch to command handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv or argv[0] in ('-h', '--help', 'help'):
        print_usage()
        return 0

    if argv[0] in ('--version', 'version'):
        print(f"iac-engine {get_version()}")
        return 0

    command = argv[0]
    if command not in COMMANDS:
        print(f"Error: Unknown command '{command}'")
        print_usage()
        return 1

    handler, _ = COMMANDS[command]
    rc: int = handler(argv[1:])
    return rc


if __name__ == '__main__':
    sys.exit(main())
