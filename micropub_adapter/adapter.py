import abc
import inspect
import logging
import typing
from collections.abc import Mapping
from dataclasses import dataclass, field

from starlette.concurrency import run_in_threadpool
from starlette.datastructures import QueryParams, UploadFile
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .errors import ERROR_MESSAGES, MicropubError
from .normalize import (
    Files,
    get_access_token,
    is_json_request,
    normalize_form_body,
    parse_form,
    source_properties,
)
from .responses import created, error_response, no_content, to_response
from .results import Data, ErrorResult, Location, NotFound, Success, as_result

ROUTE_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
URL_ACTIONS = ("delete", "undelete", "update")

NOT_IMPLEMENTED = ErrorResult(MicropubError.INVALID_REQUEST, "not_implemented")


@dataclass
class MicropubContext:
    """Everything known about the request being handled.

    A new context is built for every call to `handle_request()` or
    `handle_media_endpoint_request()` and passed to each callback, so
    one adapter instance can serve concurrent requests.
    """

    request: Request
    user: typing.Any = None
    body: dict = field(default_factory=dict)
    files: Files = field(default_factory=dict)
    is_json: bool = False


class MicropubAdapter(abc.ABC):
    """Base class for Micropub endpoints.

    Subclasses implement `verify_access_token_callback()` plus whichever
    other callbacks they support; the defaults answer with an
    `invalid_request` error or let the request carry on. Callbacks may be
    coroutines or plain functions (run in a threadpool), and may return a
    ready-made Response to bypass the conversion in `to_response()`.
    """

    def __init__(
        self,
        logger: logging.Logger = None,
        error_messages: typing.Mapping[str, str] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.error_messages = {**ERROR_MESSAGES, **(error_messages or {})}

    # Callbacks

    @abc.abstractmethod
    async def verify_access_token_callback(self, ctx: MicropubContext, token: str):
        """Return the token's principal, False if it is invalid, or a Response.

        Whatever truthy value is returned ends up on `ctx.user`; the
        adapter never looks inside it.
        """

    async def extension_callback(self, ctx: MicropubContext):
        """Called before any Micropub handling; a truthy result ends the request."""
        return False

    async def configuration_query_callback(self, ctx: MicropubContext, params: QueryParams):
        """Answer q=config. The `syndicate-to` key also answers q=syndicate-to."""
        return {}

    async def source_query_callback(
        self, ctx: MicropubContext, url: str, properties: typing.Optional[typing.List[str]] = None
    ):
        """Return the mf2 JSON of the post at `url`, or False if there is none.

        `properties` limits the answer to those properties; None means all.
        """
        return NOT_IMPLEMENTED

    async def unknown_get_callback(self, ctx: MicropubContext):
        return MicropubError.INVALID_REQUEST

    async def delete_callback(self, ctx: MicropubContext, url: str):
        """Delete the post at `url`. True gives 204, False means no such post."""
        return NOT_IMPLEMENTED

    async def undelete_callback(self, ctx: MicropubContext, url: str):
        """Restore the post at `url`. True gives 204, a new URL gives 201."""
        return NOT_IMPLEMENTED

    async def update_callback(self, ctx: MicropubContext, url: str, actions: dict):
        """Apply the `replace`, `add` and `delete` operations in `actions` to the post at `url`.

        Returns True for 204, a URL if the post moved (201), or an error.
        """
        return NOT_IMPLEMENTED

    async def post_extension_callback(self, ctx: MicropubContext):
        """Claim POST requests that are not delete/undelete/update; falsy to continue."""
        return False

    async def create_callback(self, ctx: MicropubContext, data: dict, uploaded_files: Files):
        """Create a post from canonical mf2 `data` and return its URL."""
        return NOT_IMPLEMENTED

    async def media_endpoint_callback(self, ctx: MicropubContext, file: UploadFile):
        """Store `file` and return its URL. Falsy results give invalid_request."""
        return False

    async def media_endpoint_extension_callback(self, ctx: MicropubContext):
        return False

    # Response helpers

    def to_response(self, result: typing.Any, status_code: int = 200) -> Response:
        return to_response(result, status_code, self.error_messages)

    def error_response(self, code: str, description: str = None) -> JSONResponse:
        return error_response(code, description, messages=self.error_messages)

    def routes(self, micropub_path: str = "/micropub", media_path: str = "/media") -> typing.List[Route]:
        return [
            Route(micropub_path, self.handle_request, methods=ROUTE_METHODS, name="micropub"),
            Route(
                media_path,
                self.handle_media_endpoint_request,
                methods=ROUTE_METHODS,
                name="micropub_media",
            ),
        ]

    # Request handling

    async def handle_request(self, request: Request) -> Response:
        """Handle a request to the Micropub endpoint.

        Authenticates, gives `extension_callback()` a chance to take over,
        then dispatches GET queries and POST actions to the matching
        callback and converts its result into a response.
        """
        ctx = MicropubContext(request)
        body_ok = True
        if request.method == "POST":
            body_ok = await self._parse_body(ctx)

        denied = await self._authenticate(ctx)
        if denied is not None:
            return denied

        result = await self._call(self.extension_callback, ctx)
        if result:
            return self.to_response(result)

        if request.method == "GET":
            return await self._handle_query(ctx)
        if request.method == "POST":
            if not body_ok:
                self.logger.warning(self.error_messages["unparsable_body"])
                return self.error_response("invalid_request", "unparsable_body")
            return await self._handle_action(ctx)
        return self.to_response(MicropubError.INVALID_REQUEST)

    async def handle_media_endpoint_request(self, request: Request) -> Response:
        ctx = MicropubContext(request)
        body_ok = True
        if request.method == "POST":
            body_ok = await self._parse_body(ctx)

        denied = await self._authenticate(ctx)
        if denied is not None:
            return denied

        result = await self._call(self.media_endpoint_extension_callback, ctx)
        if result:
            return self.to_response(result)

        if request.method != "POST":
            self.logger.error(
                "Got a non-POST request to the media endpoint",
                extra={"method": request.method},
            )
            return self.to_response(MicropubError.INVALID_REQUEST)

        file = ctx.files.get("file") if body_ok else None
        if isinstance(file, list):
            file = file[0] if file else None
        if file is not None:
            raw = await self._call(self.media_endpoint_callback, ctx, file)
            result = as_result(raw)
            if isinstance(result, Location):
                return created(result.url)
            if raw:
                return self.to_response(result)

        return self.to_response(MicropubError.INVALID_REQUEST)

    async def _call(self, callback: typing.Callable, *args):
        if inspect.iscoroutinefunction(callback) or inspect.iscoroutinefunction(
            getattr(callback, "__call__", None)
        ):
            return await callback(*args)
        result = await run_in_threadpool(callback, *args)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _parse_body(self, ctx: MicropubContext) -> bool:
        ctx.is_json = is_json_request(ctx.request.headers)
        if ctx.is_json:
            try:
                body = await ctx.request.json()
            except ValueError:
                return False
            if not isinstance(body, dict):
                return False
            ctx.body = body
            return True
        try:
            form = await ctx.request.form()
        except (MultiPartException, HTTPException):
            return False
        ctx.body, ctx.files = parse_form(form)
        return True

    async def _authenticate(self, ctx: MicropubContext) -> typing.Optional[Response]:
        token = get_access_token(ctx.request.headers, ctx.body)
        if token is None:
            self.logger.warning(self.error_messages["unauthorized"])
            return self.error_response("unauthorized")

        result = await self._call(self.verify_access_token_callback, ctx, token)
        if isinstance(result, Response):
            return result
        if not result:
            self.logger.error(self.error_messages["access_token_invalid"])
            return self.error_response("forbidden", "access_token_invalid")

        self.logger.info("Access token verified successfully.", extra={"user": result})
        ctx.user = result
        return None

    async def _handle_query(self, ctx: MicropubContext) -> Response:
        params = ctx.request.query_params
        q = params.get("q")

        if q == "config":
            self.logger.info("Handling config query", extra={"params": dict(params)})
            return self.to_response(await self._call(self.configuration_query_callback, ctx, params))

        if q == "source":
            self.logger.info("Handling source query", extra={"params": dict(params)})
            properties = source_properties(params)
            if "url" not in params:
                self.logger.error(self.error_messages["missing_url_parameter"])
                return self.error_response("invalid_request", "missing_url_parameter")
            result = as_result(
                await self._call(self.source_query_callback, ctx, params["url"], properties)
            )
            if isinstance(result, NotFound):
                self.logger.error(self.error_messages["post_with_given_url_not_found"])
                result = ErrorResult(MicropubError.INVALID_REQUEST, "post_with_given_url_not_found")
            return self.to_response(result)

        if q == "syndicate-to":
            self.logger.info("Handling syndicate-to query", extra={"params": dict(params)})
            result = as_result(await self._call(self.configuration_query_callback, ctx, params))
            if isinstance(result, Response):
                # whatever answers q=config answers this too
                return result
            if (
                isinstance(result, Data)
                and isinstance(result.value, Mapping)
                and "syndicate-to" in result.value
            ):
                return JSONResponse({"syndicate-to": result.value["syndicate-to"]})
            return JSONResponse({})

        self.logger.error(
            "Micropub endpoint was not able to handle GET request", extra={"params": dict(params)}
        )
        return self.to_response(await self._call(self.unknown_get_callback, ctx))

    async def _handle_action(self, ctx: MicropubContext) -> Response:
        body = ctx.body
        action = body.get("action")

        if action in URL_ACTIONS:
            self.logger.info("Handling %s request", action, extra={"body": body})
            if "url" not in body:
                self.logger.warning(self.error_messages["missing_url_parameter"])
                return self.error_response("invalid_request", "missing_url_parameter")
            url = body["url"]
            if action == "delete":
                raw = await self._call(self.delete_callback, ctx, url)
            elif action == "undelete":
                raw = await self._call(self.undelete_callback, ctx, url)
            else:
                raw = await self._call(self.update_callback, ctx, url, body)
            result = as_result(raw)
            if isinstance(result, NotFound):
                result = ErrorResult(MicropubError.INVALID_REQUEST, "post_with_given_url_not_found")
            if isinstance(result, Success):
                return no_content()
            if isinstance(result, Location) and action != "delete":
                return created(result.url)
            return self.to_response(result)

        result = await self._call(self.post_extension_callback, ctx)
        if result:
            return self.to_response(result)

        if "action" in body:
            self.logger.warning(self.error_messages["unsupported_action"], extra={"action": action})
            return self.error_response("invalid_request", "unsupported_action")

        data = body if ctx.is_json else normalize_form_body(body)
        self.logger.info("Handling create request", extra={"data": data})
        result = as_result(await self._call(self.create_callback, ctx, data, ctx.files))
        if isinstance(result, Location):
            return created(result.url)
        return self.to_response(result)
