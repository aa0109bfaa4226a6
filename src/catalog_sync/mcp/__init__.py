"""MCP server surface for catalog sync."""
