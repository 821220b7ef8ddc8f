"""Server side of the Micropub protocol for Starlette applications.

Subclass `MicropubAdapter`, implement the callbacks you need and mount
`adapter.routes()` (or call `handle_request()` and
`handle_media_endpoint_request()` from your own endpoints).
"""
from .adapter import MicropubAdapter, MicropubContext
from .errors import ERROR_MESSAGES, ERROR_STATUS, MicropubError, error_body, is_error_code
from .normalize import get_access_token, normalize_form_body, parse_form, source_properties
from .responses import created, error_response, no_content, to_response
from .results import Data, Empty, ErrorResult, Location, NotFound, Success, as_result

__version__ = "0.1.0"

__all__ = [
    "MicropubAdapter",
    "MicropubContext",
    "MicropubError",
    "ERROR_MESSAGES",
    "ERROR_STATUS",
    "error_body",
    "is_error_code",
    "get_access_token",
    "normalize_form_body",
    "parse_form",
    "source_properties",
    "created",
    "error_response",
    "no_content",
    "to_response",
    "Data",
    "Empty",
    "ErrorResult",
    "Location",
    "NotFound",
    "Success",
    "as_result",
]
