"""CLI entry point for claudebridge."""

import sys


def main() -> int:
    """Main entry point for the claudebridge CLI."""
    from claudebridge.cli import run_cli

    return run_cli(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
