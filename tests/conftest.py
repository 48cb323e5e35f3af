import asyncio
from typing import Callable

import pytest

from convosync.backend.memory import InMemoryDatabase
from convosync.config import Settings
from convosync.session import Session


@pytest.fixture
def settings() -> Settings:
    return Settings(
        storage_public_url="http://test.local/storage",
        message_page_size=50,
        typing_timeout_seconds=0.05,
        presence_heartbeat_seconds=0.05,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
        poll_interval_seconds=0.05,
    )


@pytest.fixture
def database(settings) -> InMemoryDatabase:
    return InMemoryDatabase(public_url=settings.storage_public_url)


@pytest.fixture
def backend(database):
    """Connection of the user under test."""
    return database.connect()


@pytest.fixture
def peer_backend(database):
    """A second device or user talking to the same database."""
    return database.connect()


@pytest.fixture
def alice() -> Session:
    return Session(user_id="alice", display_name="Alice")


@pytest.fixture
def bob() -> Session:
    return Session(user_id="bob", display_name="Bob")


@pytest.fixture
def carol() -> Session:
    return Session(user_id="carol", display_name="Carol")


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> None:
    """Wait until ``predicate()`` holds, failing the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
