"""
querycache - Monitoring Module

Structured logging setup shared by the cache tiers.
"""

from .logging import bind_context, clear_context, configure_logging, get_logger, setup_logging

__all__ = [
    "configure_logging",
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
]
