"""MCP surface for codexmem (requires the ``mcp`` extra)."""
