"""Entry point for `python -m universal_mcp_server`."""

from .cli import main

if __name__ == "__main__":
    main()
