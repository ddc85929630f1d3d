"""FlowTask MCP OAuth authorization server."""
