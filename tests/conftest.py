"""
Shared fixtures: a fake server on a random local port and a stop event.
"""

import asyncio

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from tests.fakes import FakeServer, RecordingSink


@pytest_asyncio.fixture
async def fake_server():
    server = FakeServer()
    test_server = TestServer(server.app)
    await test_server.start_server()
    server.domain = f"{test_server.host}:{test_server.port}"
    yield server
    await test_server.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest_asyncio.fixture
async def stop():
    return asyncio.Event()
