"""FastAPI plumbing shared by the clinic services."""
from .cors import configure_cors
from .health import add_standard_health
from .lifecycle import register_startup
from .logging import JsonFormatter, setup_json_logging
from .request_id import RequestIDMiddleware, get_request_id

__all__ = [
    "RequestIDMiddleware",
    "get_request_id",
    "configure_cors",
    "add_standard_health",
    "JsonFormatter",
    "setup_json_logging",
    "register_startup",
]
