"""Shared fixtures for rule import tests."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from ruleimport.models import Rule, Source
from ruleimport.store import SQLiteRuleStore


class FlushRecorder:
    """Stands in for the store's bulk insert and keeps every batch."""

    def __init__(self) -> None:
        self.batches: list[list[Rule]] = []

    def __call__(self, rules: list[Rule]) -> int:
        self.batches.append(list(rules))
        return len(rules)

    @property
    def rules(self) -> list[Rule]:
        return [rule for batch in self.batches for rule in batch]


class ListServer:
    """A remote list served over HTTP with optional ETag support."""

    def __init__(self) -> None:
        self.body = ""
        self.etag: str | None = None
        self.status = 200
        self.honor_conditional = True
        self.conditional_headers: list[str | None] = []
        self.url = ""

    async def handle(self, request: web.Request) -> web.Response:
        sent = request.headers.get("If-None-Match")
        self.conditional_headers.append(sent)
        if self.status != 200:
            return web.Response(status=self.status)
        if self.honor_conditional and self.etag and sent == self.etag:
            return web.Response(status=304)
        headers = {"ETag": self.etag} if self.etag else None
        return web.Response(text=self.body, headers=headers)


@pytest.fixture
def store(tmp_path: Path):
    rule_store = SQLiteRuleStore(tmp_path / "rules.db")
    yield rule_store
    rule_store.close()


@pytest.fixture
def flush() -> FlushRecorder:
    return FlushRecorder()


@pytest.fixture
def local_blocklist(tmp_path: Path) -> Source:
    return Source(id=1, name="local", origin=str(tmp_path / "list.txt"))


@pytest.fixture
def remote_blocklist() -> Source:
    return Source(id=2, name="remote", origin="https://lists.example.org/hosts.txt")


@pytest_asyncio.fixture
async def list_server():
    state = ListServer()
    app = web.Application()
    app.router.add_get("/list.txt", state.handle)
    server = TestServer(app)
    await server.start_server()
    state.url = str(server.make_url("/list.txt"))
    yield state
    await server.close()
