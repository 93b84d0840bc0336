"""MCP tool definitions for the agent-side tool-call process."""
