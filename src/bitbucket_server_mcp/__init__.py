"""Bitbucket Server MCP Server.

A Model Context Protocol server that exposes the Bitbucket Server / Data Center
pull-request workflow (create, inspect, comment, review, merge, decline) as tools.

Run with: uvx python -m bitbucket_server_mcp
"""

__version__ = "1.0.0"
