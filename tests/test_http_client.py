"""Tests for the shared HTTP helpers."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from common.http_client import backoff_delay, get_json, robust_get
from errors import NetworkUnavailable

URL = "https://index.test/serde.json"


def response(status=200, text='{"name": "serde"}'):
    mock = MagicMock()
    mock.status_code = status
    mock.headers = {"Content-Type": "application/json"}
    mock.text = text
    return mock


class TestRobustGet:
    """Test retries, escalation and caching."""

    def test_success(self):
        """Test a plain 200 response."""
        with patch("common.http_client.requests.get", return_value=response()) as mock_get:
            status, headers, text = robust_get(URL)
        assert status == 200
        assert headers["Content-Type"] == "application/json"
        assert text == '{"name": "serde"}'
        mock_get.assert_called_once()

    def test_server_error_retried(self):
        """Test that a 5xx answer is retried with backoff."""
        with patch("common.http_client.requests.get", side_effect=[response(503), response()]) as mock_get, \
                patch("common.http_client.time.sleep") as mock_sleep:
            status, _, _ = robust_get(URL)
        assert status == 200
        assert mock_get.call_count == 2
        mock_sleep.assert_called_once_with(backoff_delay(0))

    def test_timeouts_escalate(self):
        """Test that exhausted retries raise NetworkUnavailable."""
        with patch("common.http_client.requests.get", side_effect=requests.Timeout("slow")) as mock_get, \
                patch("common.http_client.time.sleep"):
            with pytest.raises(NetworkUnavailable) as excinfo:
                robust_get(URL, retries=3)
        assert mock_get.call_count == 3
        assert excinfo.value.context["attempts"] == 3

    def test_connection_error_escalates(self):
        """Test that connection errors are retried too."""
        with patch("common.http_client.requests.get",
                   side_effect=requests.ConnectionError("refused")) as mock_get, \
                patch("common.http_client.time.sleep"):
            with pytest.raises(NetworkUnavailable):
                robust_get(URL, retries=2)
        assert mock_get.call_count == 2

    def test_client_error_not_retried(self):
        """Test that a 404 is returned without retrying."""
        with patch("common.http_client.requests.get", return_value=response(404, "")) as mock_get:
            status, _, _ = robust_get(URL)
        assert status == 404
        mock_get.assert_called_once()

    def test_cache_hit(self):
        """Test that a repeated GET is served from memory."""
        with patch("common.http_client.requests.get", return_value=response()) as mock_get:
            robust_get(URL)
            robust_get(URL)
        mock_get.assert_called_once()

    def test_backoff_grows(self):
        """Test exponential backoff."""
        assert backoff_delay(0) < backoff_delay(1) < backoff_delay(2)
        assert backoff_delay(2) == pytest.approx(backoff_delay(0) * 4)


class TestGetJson:
    """Test JSON decoding on top of robust_get."""

    def test_parsed(self):
        """Test a JSON body is decoded."""
        with patch("common.http_client.requests.get", return_value=response()):
            status, _, data = get_json(URL)
        assert status == 200
        assert data == {"name": "serde"}

    def test_invalid_json(self):
        """Test that an undecodable body gives None."""
        with patch("common.http_client.requests.get", return_value=response(text="<html>")):
            _, _, data = get_json(URL)
        assert data is None

    def test_non_200(self):
        """Test that a non-200 answer carries no data."""
        with patch("common.http_client.requests.get", return_value=response(404, "{}")):
            status, _, data = get_json(URL)
        assert status == 404
        assert data is None
