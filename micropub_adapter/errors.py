from enum import Enum
import typing


class MicropubError(str, Enum):
    INVALID_REQUEST = "invalid_request"
    UNAUTHORIZED = "unauthorized"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    FORBIDDEN = "forbidden"

    def __str__(self) -> str:
        return self.value


ERROR_CODES = frozenset(code.value for code in MicropubError)

ERROR_STATUS = {
    "invalid_request": 400,
    "unauthorized": 401,
    "insufficient_scope": 403,
    "forbidden": 403,
}

ERROR_MESSAGES = {
    # https://micropub.spec.indieweb.org/#error-response
    "insufficient_scope": "Your access token does not grant the scope required for this action.",
    "forbidden": "The authenticated user does not have permission to perform this request.",
    "unauthorized": "The request did not provide an access token.",
    "invalid_request": "The request was invalid.",
    # adapter-specific, always sent as invalid_request unless noted
    "access_token_invalid": "The provided access token could not be verified.",  # forbidden
    "missing_url_parameter": "The request did not provide the required url parameter.",
    "post_with_given_url_not_found": "A post with the given URL could not be found.",
    "not_implemented": "This functionality is not implemented.",
    "unsupported_action": "The requested action is not supported.",
    "unparsable_body": "The request body could not be parsed.",
}


def is_error_code(value: typing.Any) -> bool:
    return isinstance(value, str) and str(value) in ERROR_CODES


def error_body(
    code: typing.Union[str, MicropubError],
    description: str = None,
    messages: typing.Mapping[str, str] = ERROR_MESSAGES,
) -> dict:
    """Build the JSON error object for `code`.

    `description` may be a key of `messages` (e.g. "missing_url_parameter")
    or literal text; without it the code's own description is used.
    """
    code = str(code)
    if description is None:
        description = messages.get(code, ERROR_MESSAGES.get(code, ""))
    elif description in messages:
        description = messages[description]
    return {"error": code, "error_description": description}
