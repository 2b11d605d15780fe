"""
Entry point for running the relayer as a module.

Usage:
    python -m ibt_relayer
"""

from ibt_relayer.cli import main

if __name__ == "__main__":
    main()
