"""MCP client core: shared tool-server processes, transports and a tool-calling chat loop."""

__version__ = "0.3.0"

__all__ = ["__version__"]
