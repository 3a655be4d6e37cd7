import pytest


@pytest.fixture
def anyio_backend():
    # The engine schedules sessions with asyncio tasks.
    return "asyncio"
