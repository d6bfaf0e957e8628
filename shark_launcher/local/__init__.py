"""
Local package for the MCP Shark launcher.

This package provides the effective launcher configuration through the
`effective_settings` object, plus the supervisor and console subpackages.
"""

from .config import effective_settings

__all__ = ["effective_settings"]
