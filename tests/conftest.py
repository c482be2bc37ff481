import pytest
from unittest.mock import AsyncMock

from infrastructure import InMemoryDatabase, InMemoryRepositories


@pytest.fixture
def db():
    """A fresh, empty in-memory database per test."""
    return InMemoryDatabase()


@pytest.fixture
def repos(db):
    return InMemoryRepositories(db)


def fail_on_call(method, call_number, error):
    """
    AsyncMock that delegates to `method` but raises `error` on the
    `call_number`-th call (1-based).
    """
    calls = {"n": 0}

    async def side_effect(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == call_number:
            raise error
        return await method(*args, **kwargs)

    return AsyncMock(side_effect=side_effect)


@pytest.fixture
def failing():
    return fail_on_call
