"""Pytest configuration and fixtures."""

import json
from typing import Any

import httpx
import pytest

from celine.idsync.config import IdpSettings
from celine.idsync.audit import SyncAuditLogger
from celine.idsync.models import LocalUser, Profile
from celine.idsync.store import InMemoryProfileRepository, InMemoryUserRepository

TOKEN_PATH = "/oauth/v2/token"
IMPORT_PATH = "/management/v1/users/human/_import"
SEARCH_PATH = "/management/v1/users/_search"


class FakeIdp:
    """Scripted IdP behind an httpx.MockTransport.

    Responses are queued per (method, path); the last one repeats. An entry
    is either (status, body) or an exception instance to raise.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.token_status = 200
        self.token_body: Any = {
            "access_token": "tok-1",
            "token_type": "Bearer",
            "expires_in": 3600,
        }

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def route(self, method: str, path: str, *responses: Any) -> None:
        self.routes[(method, path)] = list(responses)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == TOKEN_PATH:
            return _response(self.token_status, self.token_body)

        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return _response(404, {"message": "not found"})
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(entry, Exception):
            raise entry
        status, body = entry
        return _response(status, body)


def _response(status: int, body: Any) -> httpx.Response:
    if body is None:
        return httpx.Response(status)
    if isinstance(body, str):
        return httpx.Response(status, text=body)
    return httpx.Response(status, json=body)


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content)


class FakeStructLogger:
    def __init__(self):
        self.calls = []

    def info(self, **kwargs):
        self.calls.append(("info", kwargs))

    def warning(self, **kwargs):
        self.calls.append(("warning", kwargs))

    def error(self, **kwargs):
        self.calls.append(("error", kwargs))


@pytest.fixture
def idp_settings() -> IdpSettings:
    """IdP settings with service client credentials."""
    return IdpSettings(
        base_url="https://idp.test",
        client_id="svc-idsync",
        client_secret="s3cret",
        _env_file=None,
    )


@pytest.fixture
def fake_idp() -> FakeIdp:
    return FakeIdp()


@pytest.fixture
def fake_logger() -> FakeStructLogger:
    return FakeStructLogger()


@pytest.fixture
def audit(fake_logger) -> SyncAuditLogger:
    return SyncAuditLogger(logger=fake_logger)


@pytest.fixture
def users() -> InMemoryUserRepository:
    return InMemoryUserRepository()


@pytest.fixture
def profiles() -> InMemoryProfileRepository:
    return InMemoryProfileRepository()


@pytest.fixture
def ada(users, profiles) -> LocalUser:
    """An unsynced user with a complete profile."""
    user = LocalUser(
        email="ada@example.org",
        password_hash="$2y$13$abcdefghijklmnopqrstuv",
        email_confirmed=True,
    )
    users.save(user)
    profiles.save(
        Profile(
            user_id=user.id,
            client_id="alumni-portal",
            first_name="Ada",
            last_name="Byron",
            nickname="ada",
        )
    )
    return user
