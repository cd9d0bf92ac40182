"""
Entry point for running cherishly_sync as a module.

Usage:
    python -m cherishly_sync --help
    python -m cherishly_sync pair generate
    python -m cherishly_sync run
"""

from cherishly_sync.cli import cli

if __name__ == "__main__":
    cli()
