"""
Command-line interface wrapper for the IoT Relay Server.

Provides the console script entry point and delegates to ``server.main()``.
"""

import sys

from .config import ConfigurationError, DefaultConfigError
from .server import main


def cli_main() -> None:
    """Entry point for the iot-relay-server command."""
    try:
        main()
    except KeyboardInterrupt:
        print("\nServer interrupted by user")
        sys.exit(0)
    except SystemExit:
        raise
    except (ConfigurationError, DefaultConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
