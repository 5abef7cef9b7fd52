"""
Unit tests for the remote persistence collaborator.
"""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from replisync.remote.client import RemoteStore, RestRemoteStore, RetryingRemote
from replisync.utils.config import RemoteConfig, RetryConfig
from replisync.utils.errors import RemoteError
from tests.utils.mock_helpers import FakeRemote, SleepRecorder


def postgrest_app(rows, requests):
    """Minimal PostgREST-style table endpoint."""

    def matching(request):
        wanted = request.query.get("id")
        if wanted is None:
            return rows
        return [r for r in rows if f"eq.{r['id']}" == wanted]

    async def handle(request):
        requests.append((request.method, dict(request.query), request.headers.copy()))
        if request.headers.get("apikey") != "secret":
            return web.json_response({"message": "no api key"}, status=401)

        if request.method == "GET":
            result = list(matching(request))
            if request.query.get("order") == "id":
                result.sort(key=lambda r: r["id"])
            return web.json_response(result)
        if request.method == "POST":
            row = await request.json()
            rows.append(row)
            return web.json_response([row], status=201)
        if request.method == "PATCH":
            patch = await request.json()
            found = matching(request)
            for row in found:
                row.update(patch)
            return web.json_response(found)
        if request.method == "DELETE":
            for row in list(matching(request)):
                rows.remove(row)
            return web.Response(status=204)
        return web.Response(status=405)

    app = web.Application()
    app.router.add_route("*", "/rest/v1/records", handle)
    return app


class TestRestRemoteStore:
    """Test RestRemoteStore against a local HTTP server."""

    @pytest.fixture
    async def server(self):
        rows, requests = [], []
        server = TestServer(postgrest_app(rows, requests))
        await server.start_server()
        server.rows = rows
        server.requests = requests
        yield server
        await server.close()

    @pytest.fixture
    async def client(self, server):
        client = RestRemoteStore(str(server.make_url("")), api_key="secret")
        yield client
        await client.close()

    @pytest.mark.asyncio
    async def test_satisfies_protocol(self, client):
        assert isinstance(client, RemoteStore)
        assert isinstance(RetryingRemote(FakeRemote()), RemoteStore)

    @pytest.mark.asyncio
    async def test_insert_and_select(self, client, server):
        """Test inserting rows and reading them back in order."""
        await client.insert({"id": "b", "title": "Keys"})
        inserted = await client.insert({"id": "a", "title": "Hat"})

        rows = await client.select(order="id")

        assert inserted == {"id": "a", "title": "Hat"}
        assert [r["id"] for r in rows] == ["a", "b"]
        method, query, headers = server.requests[-1]
        assert query == {"select": "*", "order": "id"}
        assert headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_select_with_filters(self, client, server):
        server.rows.extend([{"id": "a"}, {"id": "b"}])

        rows = await client.select(filters={"id": "b"})

        assert rows == [{"id": "b"}]

    @pytest.mark.asyncio
    async def test_update(self, client, server):
        """Test patching an existing row."""
        server.rows.append({"id": "a", "status": "unclaimed"})

        updated = await client.update("a", {"status": "claimed"})

        assert updated == {"id": "a", "status": "claimed"}
        assert server.requests[-1][2]["Prefer"] == "return=representation"

    @pytest.mark.asyncio
    async def test_update_missing_row(self, client):
        """Test that patching nothing is reported as not found."""
        with pytest.raises(RemoteError) as exc_info:
            await client.update("missing", {"status": "claimed"})
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_delete(self, client, server):
        server.rows.append({"id": "a"})

        assert await client.delete("a") is None
        assert server.rows == []

    @pytest.mark.asyncio
    async def test_http_error(self, server):
        """Test that error statuses become RemoteError."""
        client = RestRemoteStore(str(server.make_url("")), api_key="wrong")
        try:
            with pytest.raises(RemoteError) as exc_info:
                await client.select()
            assert exc_info.value.status == 401
            assert not exc_info.value.is_retryable
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Test that an unreachable host becomes RemoteError."""
        client = RestRemoteStore("http://127.0.0.1:1", timeout=2.0)
        try:
            with pytest.raises(RemoteError):
                await client.select()
        finally:
            await client.close()

    def test_from_config(self):
        with pytest.raises(RemoteError):
            RestRemoteStore.from_config(RemoteConfig())

        client = RestRemoteStore.from_config(RemoteConfig(url="https://db.example.com/", table="items"))
        assert client.endpoint == "https://db.example.com/rest/v1/items"


class TestRetryingRemote:
    """Test RetryingRemote backoff."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        sleep = SleepRecorder()
        remote = RetryingRemote(FakeRemote(failures=2), max_attempts=5,
                                base_delay_ms=100, jitter=0, sleep=sleep)

        await remote.insert({"id": "a"})

        assert sleep.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        sleep = SleepRecorder()
        fake = FakeRemote(failures=10)
        remote = RetryingRemote(fake, max_attempts=3, jitter=0, sleep=sleep)

        with pytest.raises(RemoteError):
            await remote.select()

        assert len(fake.calls) == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_delay_is_capped(self):
        sleep = SleepRecorder()
        remote = RetryingRemote(FakeRemote(failures=5), max_attempts=6,
                                base_delay_ms=1000, max_delay_ms=3000, jitter=0, sleep=sleep)

        await remote.delete("a")

        assert sleep.delays == [1.0, 2.0, 3.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_jitter_bounds(self):
        sleep = SleepRecorder()
        remote = RetryingRemote(FakeRemote(failures=1), base_delay_ms=100, jitter=0.25, sleep=sleep)

        await remote.update("a", {"id": "a"})

        assert 0.1 <= sleep.delays[0] <= 0.125

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self):
        """Test that a rejected request fails at once."""
        sleep = SleepRecorder()
        fake = FakeRemote(failures=10, status=401)
        remote = RetryingRemote(fake, max_attempts=5, sleep=sleep)

        with pytest.raises(RemoteError) as exc_info:
            await remote.insert({"id": "a"})

        assert exc_info.value.status == 401
        assert len(fake.calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_rate_limiting_is_retried(self):
        sleep = SleepRecorder()
        fake = FakeRemote(failures=2, status=429)
        remote = RetryingRemote(fake, max_attempts=5, jitter=0, sleep=sleep)

        await remote.insert({"id": "a"})

        assert len(fake.calls) == 3
        assert fake.rows == [{"id": "a"}]

    @pytest.mark.asyncio
    async def test_unexpected_errors_wrapped(self):
        class Broken(FakeRemote):
            async def select(self, filters=None, order=None):
                raise ValueError("bad row")

        remote = RetryingRemote(Broken(), max_attempts=1)

        with pytest.raises(RemoteError):
            await remote.select()

    def test_from_config(self):
        remote = RetryingRemote.from_config(FakeRemote(), RetryConfig(max_attempts=2, base_delay_ms=50))
        assert remote.max_attempts == 2
        assert remote.base_delay == 0.05
