"""FlowTask task tools exposed over MCP."""
