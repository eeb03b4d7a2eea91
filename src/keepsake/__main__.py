"""
Entry point for running Keepsake as a module.

Usage:
    python -m keepsake [command] [options]
"""

from keepsake.cli import main

if __name__ == "__main__":
    main()
