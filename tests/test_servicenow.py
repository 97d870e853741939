"""
Tests for the ServiceNow Table API client.

Tests cover:
- Client initialization
- Record lookups by id and by encoded query
- SLA and journal note retrieval
- Rate limiting, retries and error handling
"""

import httpx
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from ticketsync.services.servicenow import (
    ServiceNowAPIError,
    ServiceNowClient,
    ServiceNowRateLimitError,
    build_delta_query,
)


def make_client(**kwargs) -> ServiceNowClient:
    return ServiceNowClient(
        instance_url="https://test.service-now.com/",
        username="sync_user",
        password="secret",
        **kwargs
    )


def make_response(status_code: int, payload=None, headers=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = str(payload)
    response.headers = headers or {}
    response.json.return_value = payload
    return response


@pytest.mark.servicenow
class TestServiceNowHelpers:
    """Synchronous client setup and query building."""

    def test_client_initialization(self):
        client = make_client(rate_limit=50)

        assert client.base_url == "https://test.service-now.com/api/now/table"
        assert client.rate_limit == 50
        assert client._client is None

    def test_build_delta_query(self):
        now = datetime(2024, 1, 15, 14, 0, 0, tzinfo=timezone.utc)
        assert build_delta_query(1, now) == "sys_updated_on>=2024-01-15 13:00:00"
        assert build_delta_query(24, now) == "sys_updated_on>=2024-01-14 14:00:00"


@pytest.mark.asyncio
@pytest.mark.servicenow
class TestServiceNowClient:
    """Test suite for ServiceNowClient."""

    async def test_context_manager(self):
        async with make_client() as client:
            assert client._client is not None
        assert client._client is None

    async def test_fetch_by_id(self, sample_record):
        client = make_client()

        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"result": sample_record}

            record = await client.fetch_by_id("incident", "46d44a5dc0a8010e0000b1d7a2c1f9e1")

            assert record == sample_record
            args, kwargs = mock_request.call_args
            assert args == ("GET", "/incident/46d44a5dc0a8010e0000b1d7a2c1f9e1")
            assert kwargs["params"]["sysparm_display_value"] == "all"

    async def test_fetch_by_id_not_found(self):
        client = make_client()

        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = None

            assert await client.fetch_by_id("incident", "missing") is None

    async def test_fetch_by_filter_passes_query_and_limit(self, sample_record):
        client = make_client()

        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"result": [sample_record]}

            records = await client.fetch_by_filter("change_task", "active=true", limit=25)

            assert records == [sample_record]
            params = mock_request.call_args.kwargs["params"]
            assert params["sysparm_query"] == "active=true"
            assert params["sysparm_limit"] == "25"

    async def test_fetch_by_filter_without_query(self):
        client = make_client()

        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"result": []}

            assert await client.fetch_by_filter("sc_task") == []
            assert "sysparm_query" not in mock_request.call_args.kwargs["params"]

    async def test_fetch_sla_queries_task_sla(self):
        client = make_client()

        with patch.object(client, "fetch_by_filter", new_callable=AsyncMock) as mock_filter:
            mock_filter.return_value = [{"sys_id": "sla1"}]

            sla = await client.fetch_sla("abc")

            assert sla == [{"sys_id": "sla1"}]
            mock_filter.assert_awaited_once_with("task_sla", "task=abc", 100)

    async def test_fetch_notes_maps_journal_entries(self):
        client = make_client()
        entries = [
            {
                "sys_id": {"value": "j1", "display_value": "j1"},
                "value": {"value": "Rebooted router", "display_value": "Rebooted router"},
                "sys_created_on": {"value": "2024-01-15 10:30:00", "display_value": "15/01/2024"},
                "sys_created_by": {"value": "jsmith", "display_value": "jsmith"},
                "element": {"value": "work_notes", "display_value": "Work notes"},
            },
            {
                "sys_id": "j2",
                "value": "Customer confirmed",
                "sys_created_on": "2024-01-15 11:00:00",
                "sys_created_by": "",
                "element": "comments",
            },
        ]

        with patch.object(client, "fetch_by_filter", new_callable=AsyncMock) as mock_filter:
            mock_filter.return_value = entries

            notes = await client.fetch_notes("abc")

            mock_filter.assert_awaited_once_with(
                "sys_journal_field", "element_id=abc^ORDERBYsys_created_on", 100
            )
            assert notes[0] == {
                "sys_id": "j1",
                "value": "Rebooted router",
                "sys_created_on": "2024-01-15 10:30:00",
                "sys_created_by": "jsmith",
                "work_notes": True,
            }
            assert notes[1]["work_notes"] is False
            assert notes[1]["sys_created_by"] == "system"

    async def test_rate_limit_enforcement(self):
        client = make_client(rate_limit=2)

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await client._check_rate_limit()
            await client._check_rate_limit()
            mock_sleep.assert_not_called()

            await client._check_rate_limit()
            mock_sleep.assert_called_once()

    async def test_404_returns_none(self):
        client = make_client()

        with patch.object(client, "_ensure_client", new_callable=AsyncMock):
            client._client = MagicMock()
            client._client.request = AsyncMock(return_value=make_response(404))

            assert await client._request("GET", "/incident/missing") is None

    async def test_rate_limit_429_retry(self):
        client = make_client()
        success = make_response(200, {"result": []})

        with patch.object(client, "_ensure_client", new_callable=AsyncMock):
            with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
                client._client = MagicMock()
                client._client.request = AsyncMock(
                    side_effect=[make_response(429, headers={"Retry-After": "2"}), success]
                )

                result = await client._request("GET", "/incident")

                assert result == {"result": []}
                mock_sleep.assert_any_call(2)

    async def test_rate_limit_exhausted(self):
        client = make_client()

        with patch.object(client, "_ensure_client", new_callable=AsyncMock):
            with patch("asyncio.sleep", new_callable=AsyncMock):
                client._client = MagicMock()
                client._client.request = AsyncMock(return_value=make_response(429))

                with pytest.raises(ServiceNowRateLimitError):
                    await client._request("GET", "/incident")

    async def test_server_error_retry(self):
        client = make_client()

        with patch.object(client, "_ensure_client", new_callable=AsyncMock):
            with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
                client._client = MagicMock()
                client._client.request = AsyncMock(
                    side_effect=[make_response(503, "busy"), make_response(200, {"result": []})]
                )

                assert await client._request("GET", "/incident") == {"result": []}
                mock_sleep.assert_called()

    async def test_max_retries_exceeded(self):
        client = make_client()

        with patch.object(client, "_ensure_client", new_callable=AsyncMock):
            with patch("asyncio.sleep", new_callable=AsyncMock):
                client._client = MagicMock()
                client._client.request = AsyncMock(return_value=make_response(500, "down"))

                with pytest.raises(ServiceNowAPIError):
                    await client._request("GET", "/incident")

                assert client._client.request.await_count == client.MAX_RETRIES + 1

    async def test_client_error_no_retry(self):
        client = make_client()
        response_401 = make_response(401, "Unauthorized")
        response_401.raise_for_status.side_effect = httpx.HTTPStatusError(
            "401", request=MagicMock(), response=response_401
        )

        with patch.object(client, "_ensure_client", new_callable=AsyncMock):
            client._client = MagicMock()
            client._client.request = AsyncMock(return_value=response_401)

            with pytest.raises(ServiceNowAPIError):
                await client._request("GET", "/incident")

            assert client._client.request.await_count == 1

    async def test_connection_error_retried_then_raised(self):
        client = make_client()

        with patch.object(client, "_ensure_client", new_callable=AsyncMock):
            with patch("asyncio.sleep", new_callable=AsyncMock):
                client._client = MagicMock()
                client._client.request = AsyncMock(
                    side_effect=httpx.ConnectError("connection refused")
                )

                with pytest.raises(ServiceNowAPIError):
                    await client._request("GET", "/incident")
