"""Error response builders for MCP tool handlers.

Structured error responses carry a corrective action so AI agents can
recover from errors without human intervention.
"""

import mcp.types as types

from ...errors import (
    AuthorizationError,
    CatalogSyncError,
    QuotaExceededError,
    ReadOnlyModeError,
    ResourceNotFoundError,
    RetryExhaustedError,
    SessionAbortedError,
    StateCorruptionError,
    ThrottledError,
    ValidationError,
)


def build_error_response(
    error_type: str, message: str, corrective_action: str
) -> types.CallToolResult:
    """Build a structured error response with corrective action.

    Args:
        error_type: Error category (not_found, permission_denied, read_only,
            rate_limited, validation_error, server_error)
        message: Human-readable error description
        corrective_action: Specific action the agent can take to resolve the error

    Returns:
        CallToolResult with isError=True

    Examples:
        >>> build_error_response("not_found", "No session recorded", "Run catalog_sync first.")
        CallToolResult(content=[TextContent(...)], isError=True)
    """
    error_text = f"Error ({error_type}): {message}\n\nAction: {corrective_action}"

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=error_text)],
        isError=True,
    )


def translate_catalog_error(error: CatalogSyncError) -> types.CallToolResult:
    """Translate a catalog error to a structured error response."""
    cause = error.cause if isinstance(error, RetryExhaustedError) else error

    match cause:
        case AuthorizationError():
            return build_error_response(
                "permission_denied",
                error.message,
                "Check SHOP_ACCESS_TOKEN and the app's granted scopes.",
            )
        case ReadOnlyModeError():
            return build_error_response(
                "read_only",
                error.message,
                "Unset CATALOG_READ_ONLY (or sync.read_only_mode) to allow "
                "writes, or use dry_run=true to preview.",
            )
        case ThrottledError() | QuotaExceededError():
            return build_error_response(
                "rate_limited",
                error.message,
                "Wait a few minutes and retry; progress is checkpointed.",
            )
        case ResourceNotFoundError():
            return build_error_response(
                "not_found",
                error.message,
                "Verify the record exists on the remote store.",
            )
        case ValidationError():
            return build_error_response(
                "validation_error",
                error.message,
                "Fix the offending rows in the mirror and retry.",
            )
        case StateCorruptionError() | SessionAbortedError():
            return build_error_response(
                "server_error",
                error.message,
                "Inspect the session with catalog_sync_status, then retry.",
            )
        case _:
            return build_error_response(
                "server_error",
                error.message,
                "Check shop connectivity and retry later.",
            )
