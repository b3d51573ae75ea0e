"""Shared test fixtures for telerpc tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from telerpc import Client, RpcServer, ServerConfig, ServiceProxy, serve_pipe
from tests.fixture_service import FixtureService, FixtureServiceImpl


@pytest.fixture
def impl() -> FixtureServiceImpl:
    """A fresh service implementation."""
    return FixtureServiceImpl()


@pytest.fixture
def server(impl: FixtureServiceImpl) -> RpcServer:
    """A server hosting the fixture service with a fast tick."""
    rpc_server = RpcServer(config=ServerConfig(tick_interval=0.005, version="test-1"), server_id="fixture")
    rpc_server.add_service(FixtureService, impl)
    return rpc_server


@pytest.fixture
def client(server: RpcServer) -> Iterator[Client]:
    """A client connected to ``server`` over in-process pipes."""
    with serve_pipe(server, name="tester") as conn:
        yield conn


@pytest.fixture
def fixture(client: Client) -> ServiceProxy:
    """Typed proxy for the fixture service."""
    return ServiceProxy(client, FixtureService)
