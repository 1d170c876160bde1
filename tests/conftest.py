from __future__ import annotations

import pytest
from aiohttp.test_utils import TestServer

from runctl.client import RunClient
from tests.helpers import PROJECT, REGION, FakeControlPlane


@pytest.fixture
def fake() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
async def server(fake: FakeControlPlane):
    srv = TestServer(fake.app())
    await srv.start_server()
    yield srv
    await srv.close()


@pytest.fixture
def base_url(server: TestServer) -> str:
    return f"http://{server.host}:{server.port}"


@pytest.fixture
async def client(base_url: str):
    async with RunClient(
        PROJECT,
        REGION,
        endpoint=base_url,
        iam_endpoint=base_url,
        max_attempts=3,
        retry_base_delay=0.01,
    ) as c:
        yield c
