"""Entry point for running the bridge as a module.

Usage:
    python -m mcp_nrepl --nrepl-port 1667
"""

import sys

from mcp_nrepl.server import main

if __name__ == "__main__":
    sys.exit(main())
