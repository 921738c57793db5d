"""
Service plumbing shared by the dine-in apps: request ids, JSON logs, CORS,
the /health probe and startup/shutdown hooks.
"""

from .cors import configure_cors, parse_origins
from .health import add_standard_health
from .lifecycle import register_shutdown, register_startup
from .logging import JsonFormatter, setup_json_logging
from .request_id import RequestIDMiddleware, get_request_id

__all__ = [
    "JsonFormatter",
    "RequestIDMiddleware",
    "add_standard_health",
    "configure_cors",
    "get_request_id",
    "parse_origins",
    "register_shutdown",
    "register_startup",
    "setup_json_logging",
]
