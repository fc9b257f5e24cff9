"""
Command-line interface wrapper for the xrwall relay.

This module provides the CLI entry point used by pip-installed scripts and uvx.
It delegates to the main() function in the server module.
"""

import sys

from .server import main


def cli_main() -> None:
    """
    Main CLI entry point for the xrwall-relay command.

    Referenced in pyproject.toml as the console script entry point.
    """
    try:
        main()
    except KeyboardInterrupt:
        print("\nRelay interrupted by user")
        sys.exit(0)
    except SystemExit:
        # Exit code decided by main() (startup failure, incomplete drain)
        raise
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
