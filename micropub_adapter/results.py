"""Callback results.

Callbacks may return one of the classes below, or the shorthand values
accepted by `as_result()`:

    Response          -> returned unchanged
    "invalid_request" -> ErrorResult (any of the four Micropub error codes)
    "https://..."     -> Location
    True              -> Success
    False             -> NotFound
    None              -> Empty
    {...}             -> Data
"""
import typing
from dataclasses import dataclass

from starlette.responses import Response

from .errors import MicropubError, is_error_code


@dataclass(frozen=True)
class ErrorResult:
    code: MicropubError
    description: typing.Optional[str] = None


@dataclass(frozen=True)
class Data:
    value: typing.Any


@dataclass(frozen=True)
class Location:
    url: str


@dataclass(frozen=True)
class Success:
    pass


@dataclass(frozen=True)
class NotFound:
    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class Empty:
    def __bool__(self) -> bool:
        return False


Result = typing.Union[Response, ErrorResult, Data, Location, Success, NotFound, Empty]
RESULT_TYPES = (Response, ErrorResult, Data, Location, Success, NotFound, Empty)


def as_result(value: typing.Any) -> Result:
    if isinstance(value, RESULT_TYPES):
        return value
    if value is True:
        return Success()
    if value is False:
        return NotFound()
    if value is None:
        return Empty()
    if is_error_code(value):
        return ErrorResult(MicropubError(str(value)))
    if isinstance(value, str):
        return Location(value)
    return Data(value)
