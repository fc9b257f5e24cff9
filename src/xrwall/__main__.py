"""
Main entry point for running the xrwall relay as a module.

This allows the package to be executed with:
    python -m xrwall

The recommended way to run the relay is the installed CLI command:
    xrwall-relay
"""

from .cli import cli_main

if __name__ == "__main__":
    cli_main()
