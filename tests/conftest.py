"""Pytest fixtures and configuration for Marquee tests"""

import asyncio
import os

import httpx
import pytest

# Keep a developer's .env or shell from leaking into Settings()
os.environ.pop("SERVER_URL", None)

from marquee.schemas import User  # noqa: E402
from marquee.session.store import SessionStore  # noqa: E402
from marquee.storage.memory import InMemorySecureStorage  # noqa: E402
from marquee.types import CredentialBundle  # noqa: E402

SERVER_URL = "https://cinema.example.com"


class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MockServer:
    """Scripted media server behind httpx.MockTransport.

    ``on(method, path, *responses)`` queues replies for a route; the last one
    repeats. A reply is an httpx.Response, an exception instance to raise, or
    a callable taking the request and returning either.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *responses) -> None:
        self.routes[(method.upper(), path)] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": f"No route for {request.url.path}"})

        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(reply) and not isinstance(reply, httpx.Response):
            reply = reply(request)
        if isinstance(reply, Exception):
            raise reply
        # Fresh copy so a repeated reply is never consumed twice
        return httpx.Response(reply.status_code, headers=reply.headers, content=reply.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, path: str, method: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path == path and (method is None or r.method == method.upper())
        ]


@pytest.fixture
def fake_clock():
    """Controllable monotonic clock"""
    return FakeClock()


@pytest.fixture
def sleeps():
    """Delays requested through the no_sleep fixture"""
    return []


@pytest.fixture
def no_sleep(sleeps):
    """Awaitable sleep that records the delay and only yields to the loop"""
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)
    return _sleep


@pytest.fixture
def mock_server():
    """Scripted server for httpx.MockTransport"""
    return MockServer()


@pytest.fixture
def storage():
    """Empty in-memory secure storage"""
    return InMemorySecureStorage()


@pytest.fixture
def store(storage):
    """Session store over in-memory storage"""
    return SessionStore(storage)


@pytest.fixture
def user_payload():
    """User profile as the server sends it"""
    return {
        "id": "user-1",
        "name": "Ada Lovelace",
        "email": "ada@example.com",
        "approved": True,
        "limitedAccess": False,
    }


@pytest.fixture
def user(user_payload):
    return User.model_validate(user_payload)


@pytest.fixture
def bundle(user):
    """A complete credential bundle"""
    return CredentialBundle(
        server_url=SERVER_URL,
        user=user,
        access_token="token-1",
        session_id="session-1",
    )
