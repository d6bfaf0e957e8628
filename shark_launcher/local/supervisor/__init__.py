"""
Supervisor package for the MCP Shark launcher.

It launches the MCP server and the UI server as child processes, waits until
each is reachable on its fixed port, stops whole process trees and reclaims
ports left behind by earlier runs. `Supervisor` is the only entry point the
console needs.
"""

from .supervisor import Supervisor, StartResult, StopResult
from .services import ServiceDescriptor, build_default_services, get_mcp_shark_version, resolve_mcp_shark_path

__all__ = [
    "Supervisor",
    "StartResult",
    "StopResult",
    "ServiceDescriptor",
    "build_default_services",
    "get_mcp_shark_version",
    "resolve_mcp_shark_path",
]
