from .client import backoff_delay, build_timeout, get_http_client, send_json
from .errors import PermanentHTTPError, PortflowHTTPError, TransientHTTPError, UnauthorizedHTTPError

__all__ = [
    "backoff_delay",
    "build_timeout",
    "get_http_client",
    "send_json",
    "PortflowHTTPError",
    "PermanentHTTPError",
    "TransientHTTPError",
    "UnauthorizedHTTPError",
]
