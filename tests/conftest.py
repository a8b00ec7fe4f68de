from __future__ import annotations

from typing import AsyncIterator

import pytest
import pytest_asyncio

from orderbook_viewer.engine.machine import ConnectionMachine
from tests.fakes import FakeTransport


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest_asyncio.fixture
async def machine(transport: FakeTransport) -> AsyncIterator[ConnectionMachine]:
    async with ConnectionMachine(transport) as m:
        yield m
