import typing

from python_multipart.multipart import parse_options_header
from starlette.datastructures import FormData, Headers, QueryParams, UploadFile

Files = typing.Dict[str, typing.Union[UploadFile, typing.List[UploadFile]]]


def is_json_request(headers: Headers) -> bool:
    content_type, _ = parse_options_header(headers.get("content-type"))
    return content_type == b"application/json"


def get_access_token(
    headers: Headers, body: typing.Optional[typing.Mapping] = None
) -> typing.Optional[str]:
    """Return the bearer token from the Authorization header or the body."""
    for value in headers.getlist("authorization"):
        if value[:7].lower() == "bearer ":
            token = value[7:].strip()
            if token:
                return token
    if body:
        token = body.get("access_token")
        if isinstance(token, list):
            token = token[0] if token else None
        if isinstance(token, str) and token:
            return token
    return None


def parse_form(form: FormData) -> typing.Tuple[dict, Files]:
    """Split a form into its fields and its uploaded files.

    Fields named `foo[]` collect all of their values into a list stored
    under `foo[]`; other fields keep their last value. Uploads are keyed
    by the field name without the `[]` suffix.
    """
    body = {}
    files = {}
    for k, v in form.multi_items():
        if isinstance(v, UploadFile):
            if k.endswith("[]"):
                files.setdefault(k[:-2], []).append(v)
            else:
                files[k] = v
        elif k.endswith("[]"):
            body.setdefault(k, []).append(v)
        else:
            body[k] = v
    return body, files


def normalize_form_body(body: typing.Mapping) -> dict:
    """Convert a parsed form create request into canonical mf2 JSON."""
    data = {"type": ["h-entry"], "properties": {}}
    for k, v in body.items():
        if k == "h":
            data["type"] = ["h-" + v]
        elif k == "access_token":
            pass
        elif isinstance(v, list):
            data["properties"][k[:-2] if k.endswith("[]") else k] = list(v)
        else:
            data["properties"][k] = [v]
    return data


def source_properties(params: QueryParams) -> typing.Optional[typing.List[str]]:
    if "properties[]" in params:
        return params.getlist("properties[]")
    if "properties" in params:
        return [params["properties"]]
    return None
