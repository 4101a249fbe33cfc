from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from curlme.src.annotation import parse_annotation
from curlme.src.errors import FetchError
from curlme.src.fetcher import FetchResponse, fetch_site_data


def _response(status_code: int, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    return response


def test_fetch_site_data_returns_body_under_request_key() -> None:
    request = parse_annotation("joke=curl-a-joke.herokuapp.com")

    with patch(
        "curlme.src.fetcher.requests.get", return_value=_response(200, "why did...")
    ) as mock_get:
        response = fetch_site_data(request, timeout=3.0)

    assert response == FetchResponse(key="joke", value="why did...")
    mock_get.assert_called_once_with("http://curl-a-joke.herokuapp.com", timeout=3.0)


def test_fetch_site_data_non_200_is_an_error() -> None:
    request = parse_annotation("joke=example.com")

    with (
        patch("curlme.src.fetcher.requests.get", return_value=_response(503, "busy")),
        pytest.raises(FetchError, match="503") as excinfo,
    ):
        fetch_site_data(request)

    assert excinfo.value.status == 503
    assert excinfo.value.retriable is True


def test_fetch_site_data_transport_error_is_an_error() -> None:
    request = parse_annotation("joke=example.com")

    with (
        patch(
            "curlme.src.fetcher.requests.get",
            side_effect=requests.ConnectionError("connection refused"),
        ),
        pytest.raises(FetchError, match="connection refused"),
    ):
        fetch_site_data(request)


def test_fetch_site_data_does_not_retry() -> None:
    request = parse_annotation("joke=example.com")

    with (
        patch(
            "curlme.src.fetcher.requests.get", side_effect=requests.Timeout("slow")
        ) as mock_get,
        pytest.raises(FetchError),
    ):
        fetch_site_data(request)

    assert mock_get.call_count == 1


def test_fetch_response_str() -> None:
    assert str(FetchResponse(key="joke", value="ha")) == "joke=ha"
