"""Entry point for running vocab_engine as a module.

Usage:
    python -m vocab_engine <command> [options]
"""
from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
