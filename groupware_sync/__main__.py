"""
Entry point for running groupware_sync as a module.

Usage:
    python -m groupware_sync --help
    python -m groupware_sync status
"""

from groupware_sync.cli import cli

if __name__ == "__main__":
    cli()
