#!/usr/bin/env python3
"""Main entry point for exbridge.

This file allows running the application directly with:
    python main.py sync

For full CLI usage, use:
    exbridge --help
"""

from exbridge.cli import cli

if __name__ == "__main__":
    cli()
