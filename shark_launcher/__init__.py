"""
MCP Shark launcher.

Supervises the two local MCP Shark services (the MCP server and the UI server):
starting them with a usable environment, waiting for their ports, and tearing
them and their descendants down on stop, restart or shutdown.
"""

__version__ = "0.3.0"
