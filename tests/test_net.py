import asyncio

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from mcprovision.net import HttpClient, HttpStatusError, backoff_delay, is_transient, retry


def make_app():
    calls = {'flaky': 0}

    async def ok(request):
        return web.Response(body=b'hello ' * 1000)

    async def flaky(request):
        calls['flaky'] += 1
        if calls['flaky'] <= 2:
            return web.Response(status=503)
        return web.Response(body=b'finally')

    async def echo_agent(request):
        return web.Response(text=request.headers.get('User-Agent', ''))

    app = web.Application()
    app.router.add_get('/ok', ok)
    app.router.add_get('/flaky', flaky)
    app.router.add_get('/agent', echo_agent)
    app['calls'] = calls
    return app


@pytest.mark.asyncio
async def test_stream_and_get_bytes():
    async with TestServer(make_app()) as server, HttpClient() as http:
        async with http.stream(str(server.make_url('/ok'))) as response:
            assert response.status == 200
            chunks = [chunk async for chunk in response.iter_chunks(512)]
        assert b''.join(chunks) == b'hello ' * 1000
        assert (await http.get_bytes(str(server.make_url('/agent')))).startswith(b'mcprovision/')


@pytest.mark.asyncio
async def test_error_status_raises():
    async with TestServer(make_app()) as server, HttpClient() as http:
        with pytest.raises(HttpStatusError) as info:
            await http.get_bytes(str(server.make_url('/missing')))
    assert info.value.status == 404
    assert not is_transient(info.value)


@pytest.mark.asyncio
async def test_retry_recovers_from_transient_status():
    app = make_app()
    async with TestServer(app) as server, HttpClient() as http:
        url = str(server.make_url('/flaky'))
        data = await retry(lambda: http.get_bytes(url), attempts=3, backoff=0, description=url)
    assert data == b'finally'
    assert app['calls']['flaky'] == 3


@pytest.mark.asyncio
async def test_retry_gives_up_after_the_last_attempt():
    app = make_app()
    async with TestServer(app) as server, HttpClient() as http:
        url = str(server.make_url('/flaky'))
        with pytest.raises(HttpStatusError) as info:
            await retry(lambda: http.get_bytes(url), attempts=2, backoff=0, description=url)
    assert info.value.status == 503
    assert app['calls']['flaky'] == 2


@pytest.mark.asyncio
async def test_retry_does_not_repeat_permanent_errors():
    calls = []

    async def operation():
        calls.append(1)
        raise HttpStatusError('https://example.test/x', 404, 'Not Found')

    with pytest.raises(HttpStatusError):
        await retry(operation, attempts=5, backoff=0)
    assert len(calls) == 1


@pytest.mark.parametrize('error, expected', [
    (HttpStatusError('u', 500), True),
    (HttpStatusError('u', 429), True),
    (HttpStatusError('u', 403), False),
    (aiohttp.ClientConnectionError(), True),
    (aiohttp.ClientPayloadError('truncated'), True),
    (asyncio.TimeoutError(), True),
    (ValueError('nope'), False),
])
def test_is_transient(error, expected):
    assert is_transient(error) is expected


def test_backoff_delay_grows_and_is_capped():
    assert backoff_delay(1, 0.5) == 0.5
    assert backoff_delay(3, 0.5) == 2.0
    assert backoff_delay(20, 0.5) == 30.0
