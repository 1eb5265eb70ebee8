"""Unit tests for the async PostgREST DataSource."""

import asyncio

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock

from iqstats.datasource.base import DataSourceError, Filter, Order
from iqstats.datasource.supabase import (
    SupabaseClient,
    filter_params,
    is_transient,
    order_param,
    parse_content_range,
)


def mock_response(status=200, body=None, headers=None, method="GET", reason="OK"):
    resp = MagicMock()
    resp.status = status
    resp.method = method
    resp.reason = reason
    resp.headers = headers or {}
    resp.json = AsyncMock(return_value=body)
    resp.__aenter__.return_value = resp
    resp.__aexit__.return_value = None
    return resp


def client_with(resp, verb="get"):
    session = MagicMock()
    session.closed = False
    getattr(session, verb).return_value = resp
    client = SupabaseClient("https://proj.supabase.co/", "anon-key")
    client._session = session
    return client, session


class TestQueryTranslation:
    """Filters, ordering and Content-Range parsing."""

    def test_filter_params(self):
        params = filter_params([
            Filter.eq("test_type", "iq"),
            Filter("score", "gte", 100),
            Filter.is_null("user_id"),
            Filter.not_null("email"),
            Filter.in_("id", ["a", "b c"]),
        ])
        assert params == [
            ("test_type", "eq.iq"),
            ("score", "gte.100"),
            ("user_id", "is.null"),
            ("email", "not.is.null"),
            ("id", 'in.(a,"b c")'),
        ]

    def test_unknown_filter_op_rejected(self):
        with pytest.raises(ValueError):
            Filter("score", "like", "1%")

    def test_order_param(self):
        assert order_param([Order("score", descending=True), Order("id")]) == "score.desc,id.asc"
        assert order_param([]) is None

    def test_parse_content_range(self):
        assert parse_content_range("0-24/3573") == 3573
        assert parse_content_range("*/0") == 0

    @pytest.mark.parametrize("header", [None, "", "0-24", "0-24/*", "0-24/abc"])
    def test_parse_content_range_invalid(self, header):
        with pytest.raises(DataSourceError):
            parse_content_range(header)

    def test_transient_classification(self):
        assert is_transient(503, None)
        assert is_transient(500, None)
        assert is_transient(429, None)
        assert is_transient(408, None)
        assert is_transient(401, "PGRST301")
        assert is_transient(None, "PGRST116")
        assert not is_transient(400, "PGRST100")
        assert not is_transient(404, None)
        assert not is_transient(None, None)


@pytest.mark.asyncio
class TestSupabaseClient:
    """Test suite for SupabaseClient async operations."""

    async def test_client_initialization(self):
        client = SupabaseClient("https://proj.supabase.co/", "anon-key", timeout=5.0)
        assert client.base_url == "https://proj.supabase.co"
        assert client.timeout == 5.0
        assert client._session is None

    async def test_session_carries_api_key(self):
        client = SupabaseClient("https://proj.supabase.co", "anon-key")
        session = await client._get_session()

        assert isinstance(session, aiohttp.ClientSession)
        assert session.headers["apikey"] == "anon-key"
        assert session.headers["Authorization"] == "Bearer anon-key"

        await client.close()
        assert session.closed

    async def test_context_manager(self):
        async with SupabaseClient("https://proj.supabase.co", "anon-key") as client:
            session = await client._get_session()
            assert not session.closed

        assert client._session.closed

    async def test_query_builds_request(self):
        rows = [{"id": "1", "score": 130}]
        client, session = client_with(mock_response(body=rows))

        result = await client.query(
            "user_test_results",
            [Filter.is_null("user_id")],
            [Order("score", descending=True), Order("id")],
            offset=1000,
            limit=1000,
        )

        assert result == rows
        url = session.get.call_args.args[0]
        params = session.get.call_args.kwargs["params"]
        assert url == "https://proj.supabase.co/rest/v1/user_test_results"
        assert params == [
            ("select", "*"),
            ("user_id", "is.null"),
            ("order", "score.desc,id.asc"),
            ("offset", "1000"),
            ("limit", "1000"),
        ]

    async def test_query_null_body_is_empty_list(self):
        client, _ = client_with(mock_response(body=None))
        assert await client.query("user_profiles") == []

    async def test_count_uses_head_and_content_range(self):
        resp = mock_response(headers={"Content-Range": "0-0/3573"}, method="HEAD")
        client, session = client_with(resp, verb="head")

        total = await client.count("user_test_results", [Filter.not_null("user_id")])

        assert total == 3573
        assert session.head.call_args.kwargs["headers"] == {"Prefer": "count=exact"}
        assert ("user_id", "not.is.null") in session.head.call_args.kwargs["params"]

    async def test_server_error_is_retryable(self):
        resp = mock_response(status=503, body={"message": "upstream busy"}, reason="Service Unavailable")
        client, _ = client_with(resp)

        with pytest.raises(DataSourceError) as exc_info:
            await client.query("user_test_results")

        assert exc_info.value.retryable
        assert exc_info.value.status == 503
        assert "upstream busy" in str(exc_info.value)

    async def test_bad_request_is_terminal(self):
        resp = mock_response(status=400, body={"code": "PGRST100", "message": "bad filter"})
        client, _ = client_with(resp)

        with pytest.raises(DataSourceError) as exc_info:
            await client.query("user_test_results")

        assert not exc_info.value.retryable
        assert exc_info.value.code == "PGRST100"

    async def test_transient_code_is_retryable(self):
        resp = mock_response(status=401, body={"code": "PGRST301", "message": "JWT expired"})
        client, _ = client_with(resp)

        with pytest.raises(DataSourceError) as exc_info:
            await client.query("user_test_results")

        assert exc_info.value.retryable

    async def test_head_error_skips_body(self):
        resp = mock_response(status=401, method="HEAD", reason="Unauthorized")
        client, _ = client_with(resp, verb="head")

        with pytest.raises(DataSourceError) as exc_info:
            await client.count("user_test_results")

        resp.json.assert_not_awaited()
        assert not exc_info.value.retryable

    async def test_network_error_is_retryable(self):
        client, session = client_with(mock_response())
        session.get.side_effect = aiohttp.ClientConnectionError("reset by peer")

        with pytest.raises(DataSourceError) as exc_info:
            await client.query("user_test_results")

        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, aiohttp.ClientConnectionError)

    async def test_timeout_is_retryable(self):
        resp = mock_response()
        resp.__aenter__.side_effect = asyncio.TimeoutError()
        client, _ = client_with(resp, verb="head")

        with pytest.raises(DataSourceError) as exc_info:
            await client.count("user_test_results")

        assert exc_info.value.retryable
