from __future__ import annotations

import os
import tempfile

# Keep the app's JSON store out of the working tree and auth disabled.
os.environ.setdefault("SOLIDGEN_STORAGE_DIR", tempfile.mkdtemp(prefix="solidgen-test-"))
os.environ.pop("SOLIDGEN_API_KEY", None)

from typing import AsyncIterator  # noqa: E402

import pytest  # noqa: E402

from solidgen.core.llm_client import GenerationClient, GenerationRequest, StreamEvent, UsageInfo  # noqa: E402
from solidgen.core.sandbox import SandboxExecutor  # noqa: E402

CUBE = "return cuboid(size=[10, 10, 10])"
CUBE_WITH_PARAMS = 'PARAMS = {"size": 10, "overlap": 0.01}\nreturn cuboid([PARAMS["size"], PARAMS["size"], PARAMS["size"]])'
TWO_PARTS = (
    'a = cuboid([10, 10, 10])\n'
    'b = translate([0, 0, 10], cylinder(3, 10))\n'
    'return [{"solid": a, "color": "#ff0000", "name": "Base"}, b]'
)
BAD_NAME = "return cube([10, 10, 10])"


class FakeClient(GenerationClient):
    """Replays canned replies; an Exception entry is raised from the stream instead."""

    name = "fake"

    def __init__(self, replies, **kwargs):
        kwargs.setdefault("overload_backoff_seconds", 0.0)
        super().__init__(**kwargs)
        self.replies = list(replies)
        self.requests: list[GenerationRequest] = []

    async def _stream_raw(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        half = len(reply) // 2
        yield StreamEvent.delta(reply[:half])
        yield StreamEvent.delta(reply[half:])
        yield StreamEvent.done(reply, UsageInfo(model="fake", input_tokens=100, output_tokens=20, cost_usd=0.001))


class FakeClientFactory:
    """client_factory stand-in; every call hands out a fresh client with the same replies."""

    def __init__(self, *replies):
        self.replies = replies
        self.clients: list[FakeClient] = []

    def __call__(self, llm_name: str) -> FakeClient:
        client = FakeClient(self.replies)
        self.clients.append(client)
        return client


@pytest.fixture
def executor() -> SandboxExecutor:
    return SandboxExecutor()
