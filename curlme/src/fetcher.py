from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import requests

from curlme.src.annotation import FetchRequest
from curlme.src.errors import FetchError
from curlme.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class FetchResponse:
    """Content to place in the ConfigMap that requested it."""

    key: str
    value: str

    def __str__(self) -> str:
        return f"{self.key}={self.value}"


def fetch_site_data(
    request: FetchRequest,
    timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
) -> FetchResponse:
    """Issue a single GET for ``request.from_site`` and return its body as text.

    There is no retry here: failed fetches surface as :class:`FetchError` and
    the work queue retries the whole event with backoff.
    """
    started = time.monotonic()
    try:
        response = requests.get(request.from_site, timeout=timeout)
    except requests.RequestException as exc:
        raise FetchError(f"failed to fetch {request.from_site}: {exc}") from exc
    finally:
        METRICS.fetch_duration_seconds.observe(time.monotonic() - started)

    with response:
        if response.status_code != 200:
            raise FetchError(
                f"received {response.status_code} status from fetch of {request.from_site}",
                status=response.status_code,
            )
        body = response.text

    LOGGER.debug("Fetched %d characters from %s", len(body), request.from_site)
    return FetchResponse(key=request.into_key, value=body)
