import pytest


@pytest.fixture
def anyio_backend():
    # The application is built on asyncio; run anyio-marked tests on it only.
    return "asyncio"
