import asyncio

import pytest

from upstreams import healthy_routes, make_client


@pytest.fixture
def routes():
    return healthy_routes()


@pytest.fixture
def run():
    """Run `func(client, ...)` against a mocked client built from routes."""

    def _run(routes, func, *args, **kwargs):
        async def _inner():
            async with make_client(routes) as client:
                return await func(client, *args, **kwargs)

        return asyncio.run(_inner())

    return _run
