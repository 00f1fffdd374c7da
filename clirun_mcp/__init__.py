"""clirun-mcp - MCP tool servers that wrap command-line programs."""

__version__ = "0.1.0"
