"""Built-in tools available to tool-call steps without an MCP broker."""
