"""Core remote API client shared by the sync engine and the MCP server."""

from .async_utils import run_sync
from .client import CatalogClient, RateLimiter

__all__ = ["CatalogClient", "RateLimiter", "run_sync"]
