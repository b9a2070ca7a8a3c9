"""IntelligenceBank MCP gateway."""
