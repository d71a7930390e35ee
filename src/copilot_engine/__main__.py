"""CLI entry point for copilot-engine.

Usage:
    python -m copilot_engine ping
    python -m copilot_engine chat --model gpt-5 -p "Explain this repo"
"""

import sys


def main() -> int:
    """Main entry point for the copilot-engine CLI."""
    from copilot_engine.cli import run_cli

    return run_cli(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
