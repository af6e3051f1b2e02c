from .json import dumps, dumps_bytes, loads
from .errors import error_response, http_error_from
from .metrics import gauge, incr, timing_ms, Timer

__all__ = [
    "dumps",
    "dumps_bytes",
    "loads",
    "error_response",
    "http_error_from",
    "gauge",
    "incr",
    "timing_ms",
    "Timer",
]
