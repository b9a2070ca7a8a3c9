"""
Which MCP operations need an authenticated session.

Resource tools proxy the upstream API with the caller's IntelligenceBank
credentials, so they require a bearer token that matches a live session.
Upload tools stage files locally and are open to any connected client.

Both the HTTP challenge middleware (which answers 401 before the request
reaches the MCP layer) and the MCP session middleware read this registry.
"""

# Tool names that require a usable session.
SESSION_TOOLS: frozenset[str] = frozenset(
    {
        "list_resources",
        "read_resource",
    }
)

# MCP protocol methods that always require a usable session. The library is
# served through tools and no resource handlers are registered, but clients
# that probe these methods still get the OAuth challenge instead of an
# empty listing.
SESSION_METHODS: frozenset[str] = frozenset(
    {
        "resources/list",
        "resources/read",
        "resources/subscribe",
    }
)


def requires_session(method: str | None, tool_name: str | None = None) -> bool:
    """Decide whether a JSON-RPC request must be authenticated."""
    if method in SESSION_METHODS:
        return True
    return method == "tools/call" and tool_name in SESSION_TOOLS
