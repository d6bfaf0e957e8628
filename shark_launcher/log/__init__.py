"""
Logging module for the launcher.
This module sets up logging, keeps the diagnostic event stream and exports it to Excel.
"""

from .setup import setup_logging, diagnostics_handler
from .export import export_diagnostics_to_excel

__all__ = ["setup_logging", "diagnostics_handler", "export_diagnostics_to_excel"]
