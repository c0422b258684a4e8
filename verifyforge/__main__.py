"""
Entry point for running verifyforge as a module.

Usage:
    python -m verifyforge plan --files 3 --lines 40 --layer domain
    python -m verifyforge cache status

This is equivalent to:
    python -m verifyforge.cli.verify_cli [args]
"""

import sys

from verifyforge.cli.verify_cli import main


if __name__ == "__main__":
    sys.exit(main())
