"""Unit tests for AdtHttpClient class."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from aiohttp import ClientError

from ..adt_rest_utils import AdtHttpClient


def _mock_headers(pairs):
    headers = MagicMock()
    headers.items.return_value = list(pairs)
    headers.getall.side_effect = lambda name, default=None: (
        [value for key, value in pairs if key.lower() == name.lower()] or default
    )
    return headers


def _mock_response(status, text="", headers=None):
    response = AsyncMock()
    response.status = status
    response.text = AsyncMock(return_value=text)
    response.headers = _mock_headers(headers or [])

    context_manager = AsyncMock()
    context_manager.__aenter__ = AsyncMock(return_value=response)
    context_manager.__aexit__ = AsyncMock(return_value=None)
    return context_manager


@pytest.fixture
def mock_aiohttp():
    with patch('plugins.adt.adt_rest_utils.aiohttp.TCPConnector') as mock_tcp_connector, \
         patch('plugins.adt.adt_rest_utils.aiohttp.ClientSession') as mock_client_session:
        mock_connector = AsyncMock()
        mock_session = AsyncMock()
        mock_connector.close = AsyncMock()
        mock_session.close = AsyncMock()
        mock_session.request = MagicMock()
        mock_tcp_connector.return_value = mock_connector
        mock_client_session.return_value = mock_session
        yield mock_tcp_connector, mock_client_session, mock_session


class TestAdtHttpClient:
    """Test cases for AdtHttpClient class."""

    def test_default_configuration(self):
        client = AdtHttpClient()

        assert client.request_timeout == 60
        assert client.max_retries == 2
        assert client.retry_statuses == [429, 500, 502, 503, 504]
        assert client.retry_methods == ["GET", "HEAD"]
        assert client.verify_ssl is True

    @pytest.mark.asyncio
    async def test_session_not_initialized_error(self):
        client = AdtHttpClient()

        with pytest.raises(RuntimeError, match="AdtHttpClient session not initialized"):
            await client.get("https://adt.example.com/sap/bc/adt/core/discovery")

    @pytest.mark.asyncio
    async def test_context_manager_disables_cookie_jar(self, mock_aiohttp):
        mock_tcp_connector, mock_client_session, mock_session = mock_aiohttp

        async with AdtHttpClient(verify_ssl=False):
            mock_tcp_connector.assert_called_once()
            assert mock_tcp_connector.call_args.kwargs["ssl"] is False
            cookie_jar = mock_client_session.call_args.kwargs["cookie_jar"]
            assert type(cookie_jar).__name__ == "DummyCookieJar"

        mock_session.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_successful_request_reports_headers_and_cookies(self, mock_aiohttp):
        _, _, mock_session = mock_aiohttp
        mock_session.request.return_value = _mock_response(
            200,
            "<ok/>",
            [
                ("x-csrf-token", "TOKEN"),
                ("Set-Cookie", "SAP_SESSIONID=abc; path=/"),
                ("Set-Cookie", "sap-usercontext=sap-client=100; path=/"),
            ],
        )

        async with AdtHttpClient() as client:
            result = await client.get("https://adt.example.com/sap/bc/adt/core/discovery")

        assert result["success"] is True
        assert result["data"] == "<ok/>"
        assert result["status_code"] == 200
        assert result["headers"]["x-csrf-token"] == "TOKEN"
        assert result["set_cookies"] == [
            "SAP_SESSIONID=abc; path=/",
            "sap-usercontext=sap-client=100; path=/",
        ]

    @pytest.mark.asyncio
    async def test_error_status_is_not_raised(self, mock_aiohttp):
        _, _, mock_session = mock_aiohttp
        mock_session.request.return_value = _mock_response(404, "Not Found")

        async with AdtHttpClient() as client:
            result = await client.post("https://adt.example.com/sap/bc/adt/oo/classes/zcl_x")

        assert result["success"] is False
        assert result["status_code"] == 404
        assert result["error"] == "HTTP 404: Not Found"
        assert result["raw_response"] == "Not Found"

    @pytest.mark.asyncio
    async def test_get_is_retried(self, mock_aiohttp):
        _, _, mock_session = mock_aiohttp
        mock_session.request.side_effect = [
            _mock_response(503, "busy"),
            _mock_response(200, "<ok/>"),
        ]

        with patch('plugins.adt.adt_rest_utils.asyncio.sleep', new=AsyncMock()) as mock_sleep:
            async with AdtHttpClient(max_retries=2) as client:
                result = await client.get("https://adt.example.com/sap/bc/adt/core/discovery")

        assert result["success"] is True
        assert mock_session.request.call_count == 2
        mock_sleep.assert_called_once_with(0.5)

    @pytest.mark.asyncio
    async def test_post_is_never_retried(self, mock_aiohttp):
        _, _, mock_session = mock_aiohttp
        mock_session.request.return_value = _mock_response(503, "busy")

        async with AdtHttpClient(max_retries=3) as client:
            result = await client.post(
                "https://adt.example.com/sap/bc/adt/oo/classes/zcl_x",
                params={"_action": "LOCK"},
            )

        assert result["success"] is False
        assert result["status_code"] == 503
        assert mock_session.request.call_count == 1

    @pytest.mark.asyncio
    async def test_network_failure_returns_connection_error(self, mock_aiohttp):
        _, _, mock_session = mock_aiohttp
        mock_session.request.side_effect = ClientError("connection refused")

        with patch('plugins.adt.adt_rest_utils.asyncio.sleep', new=AsyncMock()):
            async with AdtHttpClient(max_retries=1) as client:
                result = await client.get("https://adt.example.com/sap/bc/adt/core/discovery")

        assert result["success"] is False
        assert result["status_code"] == 0
        assert result["connection_error"] is True
        assert "connection refused" in result["error"]
        assert mock_session.request.call_count == 2
