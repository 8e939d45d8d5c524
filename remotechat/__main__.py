#!/usr/bin/env python3
"""remotechat - entry point for `python -m remotechat` and the console script."""

import sys


def main():
    """Main entry point."""
    from .cli import main as cli_main
    sys.exit(cli_main())


if __name__ == "__main__":
    main()
