"""
Pytest configuration and fixtures for the Micropub adapter tests.
"""

import pytest
from starlette.applications import Starlette
from starlette.testclient import TestClient

from micropub_adapter import MicropubAdapter

AUTH = {"Authorization": "Bearer test-token"}
USER = {"me": "https://me.example/", "scopes": ["create", "update", "delete", "undelete", "media"]}


def canned(name):
    """Callback returning `responses[name]` if set, else the base class default."""

    async def callback(self, ctx, *args):
        self.calls.append((name, args))
        self.contexts.append(ctx)
        if name in self.responses:
            return self.responses[name]
        return await getattr(MicropubAdapter, name)(self, ctx, *args)

    callback.__name__ = name
    return callback


class MockAdapter(MicropubAdapter):
    """Adapter whose callbacks return canned values and record their calls."""

    def __init__(self, responses, **kwargs):
        super().__init__(**kwargs)
        self.responses = responses
        self.calls = []
        self.contexts = []

    verify_access_token_callback = canned("verify_access_token_callback")
    extension_callback = canned("extension_callback")
    configuration_query_callback = canned("configuration_query_callback")
    source_query_callback = canned("source_query_callback")
    unknown_get_callback = canned("unknown_get_callback")
    delete_callback = canned("delete_callback")
    undelete_callback = canned("undelete_callback")
    update_callback = canned("update_callback")
    post_extension_callback = canned("post_extension_callback")
    create_callback = canned("create_callback")
    media_endpoint_callback = canned("media_endpoint_callback")
    media_endpoint_extension_callback = canned("media_endpoint_extension_callback")

    def called(self, name):
        return [args for (n, args) in self.calls if n == name]

    def content_calls(self):
        return [n for (n, _) in self.calls if n != "verify_access_token_callback"]


@pytest.fixture
def make_client():
    """Build a TestClient around a MockAdapter with the given canned responses."""

    def factory(**responses):
        responses.setdefault("verify_access_token_callback", USER)
        adapter = MockAdapter(responses)
        app = Starlette(routes=adapter.routes("/micropub", "/media"))
        return TestClient(app), adapter

    return factory
