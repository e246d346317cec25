"""MCP bridge to a Clojure nREPL session.

Usage:
    # Bridge to the nREPL server named in ./.nrepl-port
    mcp-nrepl

    # Launch and manage a Babashka nREPL backend
    mcp-nrepl --embedded

    # Or evaluate once
    mcp-nrepl --eval "(+ 1 2 3)"
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
