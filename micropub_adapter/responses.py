import typing
from collections.abc import Mapping

from starlette.responses import JSONResponse, Response

from .errors import ERROR_MESSAGES, ERROR_STATUS, error_body
from .results import Data, Empty, ErrorResult, Location, NotFound, Success, as_result


def created(location: str) -> Response:
    return Response(None, status_code=201, headers={"Location": location})


def no_content() -> Response:
    return Response(None, status_code=204)


def error_response(
    code: str,
    description: str = None,
    status_code: int = None,
    messages: typing.Mapping[str, str] = ERROR_MESSAGES,
) -> JSONResponse:
    body = error_body(code, description, messages)
    return JSONResponse(body, status_code=status_code or ERROR_STATUS.get(str(code), 400))


def to_response(
    result: typing.Any,
    status_code: int = 200,
    messages: typing.Mapping[str, str] = ERROR_MESSAGES,
) -> Response:
    """Turn any callback result into a Starlette response.

    Responses pass through untouched. Error codes expand into
    `{"error", "error_description"}` bodies, and a mapping whose `error`
    is one of the Micropub codes gets that code's status regardless of
    `status_code`. Everything else is serialized as JSON.
    """
    if isinstance(result, Response):
        return result
    result = as_result(result)
    if isinstance(result, Response):
        return result
    if isinstance(result, ErrorResult):
        result = Data(error_body(result.code, result.description, messages))
    elif isinstance(result, NotFound):
        result = Data(error_body("invalid_request", None, messages))

    if isinstance(result, Success):
        return no_content()
    if isinstance(result, Empty):
        return JSONResponse({}, status_code=status_code)
    if isinstance(result, Location):
        return JSONResponse(result.url, status_code=status_code)

    value = result.value
    if isinstance(value, Mapping) and "error" in value:
        status_code = ERROR_STATUS.get(str(value["error"]), status_code)
    return JSONResponse(value, status_code=status_code)
