"""MCP stdio server exposing workspace sync and migration tools."""
