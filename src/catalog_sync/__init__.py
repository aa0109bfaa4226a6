"""Differential catalog sync engine with an MCP server surface."""

__version__ = "0.1.0"
