import os
import re
import typing
import mimetypes
import tomlkit
from typing import Tuple, Iterable
from datetime import datetime
from hashlib import sha1
from base64 import b64encode
from secrets import token_urlsafe
from urllib.parse import urlparse
from dotenv import load_dotenv
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.middleware import Middleware
from starlette.datastructures import MutableHeaders, UploadFile
from starlette.types import ASGIApp, Receive, Scope, Send
from aiodynamo.client import Client as DbClient
from aiodynamo.credentials import Credentials as DbCreds
from aiodynamo.errors import ItemNotFound
from aiodynamo.http.httpx import HTTPX
from gidgethub import BadRequest
from gidgethub.httpx import GitHubAPI
from httpx import AsyncClient

from micropub_adapter import MicropubAdapter, MicropubContext, MicropubError

FRONTMATTER_RE = re.compile(r"^\+{3,}\s*$", re.MULTILINE)
SLUG_RE = re.compile(r"[^\w-]+")

load_dotenv()


class DataError(Exception):
    pass


def invalid(description: str) -> DataError:
    return DataError(
        400, {"error": "invalid_request", "error_description": description}
    )


# CloudFront -> API Gateway drops Host and eats Authorization
class ForwardedHeadersMiddleware(object):
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            headers = MutableHeaders(scope=scope)
            for src, dst in (("x-forwarded-host", "host"), ("x-authorization", "authorization")):
                value = headers.get(src)
                if value:
                    headers[dst] = value
        await self.app(scope, receive, send)


# Posts: TOML front matter + markdown body

Post = Tuple[tomlkit.TOMLDocument, str]


def parse_post(raw_text: str) -> Post:
    _, fm_text, content_text = FRONTMATTER_RE.split(raw_text, 2)
    return (tomlkit.loads(fm_text), content_text)


def render_post(post: Post) -> str:
    (fm, content_text) = post
    fm_text = tomlkit.dumps(fm)
    raw_text = "+++" + ("" if fm_text.startswith("\n") else "\n") + fm_text
    if not raw_text.endswith("\n"):
        raw_text += "\n"
    raw_text += "+++\n"
    if not content_text.startswith("\n"):
        raw_text += "\n"
    return raw_text + content_text


def git_blob_sha(raw_text: str) -> str:
    data = raw_text.encode("utf-8")
    return sha1(b"blob %d\0" % len(data) + data).hexdigest()


def as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise invalid("'{}' is not an ISO 8601 date".format(value))


def post_to_mf2(post: Post, properties: typing.Optional[Iterable[str]] = None) -> dict:
    (fm, content_text) = post
    props = {k.replace("_", "-"): list(v) for k, v in fm.get("extra", {}).items()}
    if "title" in fm:
        props["name"] = [fm["title"]]
    if "date" in fm:
        props["published"] = [as_datetime(fm["date"]).isoformat()]
    if "updated" in fm:
        props["updated"] = [as_datetime(fm["updated"]).isoformat()]
    if "tag" in fm.get("taxonomies", {}):
        props["category"] = list(fm["taxonomies"]["tag"])
    if content_text.strip():
        props["content"] = [content_text]
    if properties is not None:
        # a filtered source query answers with properties only
        return {"properties": {k: v for k, v in props.items() if k in properties}}
    return {"type": ["h-entry"], "properties": props}


def content_text_of(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("text", "value", "html"):
            if isinstance(value.get(key), str):
                return value[key]
    raise invalid("content must be a string or an object with a 'text', 'value' or 'html' key")


def set_properties(post: Post, props: dict, append: bool = False) -> Post:
    (fm, content_text) = post
    if not isinstance(props, dict):
        raise invalid("properties must be an object")
    for k, v in props.items():
        if v is None:
            continue
        if not isinstance(v, list):
            raise invalid("each property must be a list, check '{}'".format(k))
        if not v:
            continue
        if k == "name":
            fm["title"] = v[0]
        elif k == "published":
            fm["date"] = as_datetime(v[0])
        elif k == "updated":
            fm["updated"] = as_datetime(v[0])
        elif k == "content":
            content_text = content_text_of(v[0])
        elif k == "category":
            if "taxonomies" not in fm:
                fm["taxonomies"] = {}
            tax = fm["taxonomies"]
            tax["tag"] = (list(tax["tag"]) + v) if append and "tag" in tax else v
        else:
            if "extra" not in fm:
                fm["extra"] = {}
            extra = fm["extra"]
            k = k.replace("-", "_")
            extra[k] = (list(extra[k]) + v) if append and k in extra else v
    return (fm, content_text)


def remove_properties(post: Post, names: Iterable[str]) -> Post:
    (fm, content_text) = post
    for k in names:
        if k == "name":
            fm.pop("title", None)
        elif k == "updated":
            fm.pop("updated", None)
        elif k == "content":
            content_text = ""
        elif k == "category":
            fm.get("taxonomies", {}).pop("tag", None)
        elif k != "published":
            fm.get("extra", {}).pop(k.replace("-", "_"), None)
    return drop_empty_tables((fm, content_text))


def remove_values(post: Post, props: dict) -> Post:
    (fm, content_text) = post
    for k, v in props.items():
        if not isinstance(v, list):
            raise invalid("each property must be a list, check '{}'".format(k))
        if k == "category":
            table, key = fm.get("taxonomies", {}), "tag"
        elif k in ("name", "published", "updated", "content"):
            continue  # single-valued, delete the property instead
        else:
            table, key = fm.get("extra", {}), k.replace("-", "_")
        if key in table:
            table[key] = [x for x in table[key] if x not in v]
            if not table[key]:
                del table[key]
    return drop_empty_tables((fm, content_text))


def drop_empty_tables(post: Post) -> Post:
    (fm, content_text) = post
    for name in ("taxonomies", "extra"):
        if name in fm and len(fm[name]) == 0:
            del fm[name]
    return (fm, content_text)


def apply_update(post: Post, actions: dict) -> Post:
    if "replace" in actions:
        post = set_properties(post, actions["replace"])
    if "add" in actions:
        post = set_properties(post, actions["add"], append=True)
    delete = actions.get("delete")
    if isinstance(delete, list):
        post = remove_properties(post, delete)
    elif isinstance(delete, dict):
        post = remove_values(post, delete)
    elif delete is not None:
        raise invalid("delete must be a list of property names or an object")
    return post


def section_for(post: Post) -> str:
    (fm, content_text) = post
    extra = fm.get("extra", {})
    if "title" in fm:
        return "articles"
    if "in_reply_to" in extra:
        return "replies"
    if "like_of" in extra:
        return "likes"
    if "photo" in extra and not content_text.strip():
        return "photos"
    return "notes"


# Storage

class GitHubStore(object):
    def __init__(self, token: str, repo: str, branch: str, path_prefix: str, media_prefix: str):
        self.token = token
        self.owner, self.repo = repo.split("/")
        self.branch = branch
        self.path_prefix = path_prefix
        self.media_prefix = media_prefix

    def api(self, h: AsyncClient) -> GitHubAPI:
        return GitHubAPI(h, "micropub-adapter", oauth_token=self.token)

    def url_vars(self, path: str, **extra) -> dict:
        return {"owner": self.owner, "repo": self.repo, "path": path, **extra}

    async def get_post(self, path: str, ref: str = None) -> typing.Optional[Tuple[Post, str]]:
        async with AsyncClient() as h:
            try:
                raw_text = await self.api(h).getitem(
                    "/repos/{owner}/{repo}/contents/{path}{?ref}",
                    url_vars=self.url_vars(path, ref=ref or self.branch),
                    accept="application/vnd.github.v3.raw",
                )
            except BadRequest as err:
                if err.status_code == 404:
                    return None
                raise
        return (parse_post(raw_text), git_blob_sha(raw_text))

    async def put_file(self, path: str, content: bytes, message: str, sha: str = None):
        data = {
            "branch": self.branch,
            "message": message,
            "content": b64encode(content).decode("ascii"),
        }
        if sha:
            data["sha"] = sha
        async with AsyncClient() as h:
            return await self.api(h).put(
                "/repos/{owner}/{repo}/contents/{path}",
                url_vars=self.url_vars(path),
                data=data,
            )

    async def put_post(self, path: str, post: Post, sha: str = None):
        raw = render_post(post).encode("utf-8")
        return await self.put_file(path, raw, "[micropub] put " + path, sha)

    async def delete_post(self, path: str, sha: str):
        async with AsyncClient() as h:
            return await self.api(h).delete(
                "/repos/{owner}/{repo}/contents/{path}",
                url_vars=self.url_vars(path),
                data={"branch": self.branch, "message": "[micropub] delete " + path, "sha": sha},
            )

    async def last_revision(self, path: str) -> typing.Optional[str]:
        """The commit holding the last version of a deleted file."""
        async with AsyncClient() as h:
            async for commit in self.api(h).getiter(
                "/repos/{owner}/{repo}/commits{?path,sha}",
                url_vars=self.url_vars(path, sha=self.branch),
            ):
                # newest first: the deletion, whose parent still had the file
                parents = commit.get("parents", [])
                return parents[0]["sha"] if parents else None
        return None


class DynamoTokens(object):
    def __init__(self, region: str, table: str):
        self.region = region
        self.table = table

    async def lookup(self, token: str, host: str) -> typing.Optional[dict]:
        async with AsyncClient() as h:
            tbl = DbClient(HTTPX(h), DbCreds.auto(), self.region).table(self.table)
            try:
                data = await tbl.get_item({"token": "B-" + token})
            except ItemNotFound:
                return None
        if data.get("revoked") or data.get("host") != host:
            return None
        return data


# Micropub

class GitHubMicropub(MicropubAdapter):
    def __init__(self, store: GitHubStore, tokens: DynamoTokens, **kwargs):
        super().__init__(**kwargs)
        self.store = store
        self.tokens = tokens

    def host(self, ctx: MicropubContext) -> str:
        return ctx.request.headers["host"]

    def url2path(self, ctx: MicropubContext, url: str) -> str:
        parts = urlparse(url)
        host = self.host(ctx)
        if parts.netloc != host and not host.startswith("127.0.0.1"):
            raise invalid("The provided URL is not on the current domain")
        if not parts.path.strip("/") or ".." in parts.path.split("/"):
            raise invalid("The provided URL does not identify a post")
        return os.path.join(self.store.path_prefix, parts.path.strip("/") + ".md")

    def has_scope(self, ctx: MicropubContext, scope: str) -> bool:
        return scope in ctx.user.get("scopes", [])

    async def verify_access_token_callback(self, ctx, token):
        return await self.tokens.lookup(token, self.host(ctx)) or False

    async def configuration_query_callback(self, ctx, params):
        return {
            "media-endpoint": str(ctx.request.url_for("micropub_media")),
            "syndicate-to": [],
        }

    async def source_query_callback(self, ctx, url, properties=None):
        try:
            found = await self.store.get_post(self.url2path(ctx, url))
        except DataError as err:
            return err.args[1]
        if found is None:
            return False
        (post, _) = found
        return post_to_mf2(post, properties)

    async def create_callback(self, ctx, data, uploaded_files):
        if not self.has_scope(ctx, "create"):
            return MicropubError.INSUFFICIENT_SCOPE
        props = data.get("properties", {})
        if not isinstance(props, dict):
            return invalid("properties must be an object").args[1]
        slug = props.get("mp-slug")
        if isinstance(slug, list):
            slug = slug[0] if slug else None
        if slug:
            slug = SLUG_RE.sub("-", str(slug)).strip("-")
        props = {k: v for k, v in props.items() if not k.startswith("mp-")}
        for prop, files in uploaded_files.items():
            files = files if isinstance(files, list) else [files]
            props[prop] = list(props.get(prop, [])) + [
                await self.store_media(ctx, f) for f in files
            ]
        try:
            (fm, content_text) = set_properties((tomlkit.document(), ""), props)
        except DataError as err:
            return err.args[1]
        if "date" not in fm:
            fm["date"] = datetime.now()
        if ctx.user.get("client_id"):
            if "extra" not in fm:
                fm["extra"] = {}
            fm["extra"]["client_id"] = [ctx.user["client_id"]]
        if not slug:
            slug = fm["date"].strftime("%Y-%m-%d-%H-%M-%S")
            fm["slug"] = slug  # store explicitly to prevent Zola from eating the date
        path = section_for((fm, content_text)) + "/" + slug
        await self.store.put_post(
            os.path.join(self.store.path_prefix, path + ".md"), (fm, content_text)
        )
        return "https://{}/{}".format(self.host(ctx), path)

    async def update_callback(self, ctx, url, actions):
        if not self.has_scope(ctx, "update"):
            return MicropubError.INSUFFICIENT_SCOPE
        try:
            path = self.url2path(ctx, url)
            found = await self.store.get_post(path)
            if found is None:
                return False
            (post, sha) = found
            post = apply_update(post, actions)
        except DataError as err:
            return err.args[1]
        await self.store.put_post(path, post, sha)
        return True

    async def delete_callback(self, ctx, url):
        if not self.has_scope(ctx, "delete"):
            return MicropubError.INSUFFICIENT_SCOPE
        try:
            path = self.url2path(ctx, url)
        except DataError as err:
            return err.args[1]
        found = await self.store.get_post(path)
        if found is None:
            return False
        await self.store.delete_post(path, found[1])
        return True

    async def undelete_callback(self, ctx, url):
        if not self.has_scope(ctx, "undelete"):
            return MicropubError.INSUFFICIENT_SCOPE
        try:
            path = self.url2path(ctx, url)
        except DataError as err:
            return err.args[1]
        if await self.store.get_post(path) is not None:
            return True  # not deleted
        ref = await self.store.last_revision(path)
        found = await self.store.get_post(path, ref) if ref else None
        if found is None:
            return False
        await self.store.put_post(path, found[0])
        return True

    async def media_endpoint_callback(self, ctx, file):
        if not self.has_scope(ctx, "media"):
            return MicropubError.INSUFFICIENT_SCOPE
        return await self.store_media(ctx, file)

    async def store_media(self, ctx: MicropubContext, file: UploadFile) -> str:
        ext = os.path.splitext(file.filename or "")[1] or (
            mimetypes.guess_extension(file.content_type or "") or ""
        )
        name = token_urlsafe(12) + ext.lower()
        path = os.path.join(self.store.media_prefix, name)
        await self.store.put_file(path, await file.read(), "[micropub] upload " + name)
        return "https://{}/media/{}".format(self.host(ctx), name)


async def index(request: Request):
    return PlainTextResponse(
        "Micropub adapter demo site.",
        headers={"Link": '<{}>; rel="micropub"'.format(request.url_for("micropub"))},
    )


def create_app(micropub: MicropubAdapter, debug: bool = False) -> Starlette:
    return Starlette(
        debug=debug,
        routes=[
            Route("/", index),
            *micropub.routes("/.micropub/pub", "/.micropub/media"),
        ],
        middleware=[Middleware(ForwardedHeadersMiddleware)],
    )


def app_from_env() -> Starlette:
    store = GitHubStore(
        token=os.environ["GITHUB_TOKEN"],
        repo=os.environ["GITHUB_REPO"],
        branch=os.environ["GITHUB_BRANCH"],
        path_prefix=os.environ.get("PATH_PREFIX", "content/"),
        media_prefix=os.environ.get("MEDIA_PREFIX", "static/media/"),
    )
    tokens = DynamoTokens(os.environ["AWS_REGION"], os.environ["DYNAMO_PREFIX"] + "auth")
    return create_app(GitHubMicropub(store, tokens), debug=bool(os.environ.get("DEBUG")))
