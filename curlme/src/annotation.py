from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from curlme.src.errors import AnnotationFormatError

CURL_ANNOTATION = "x-k8s.io/curl-me-that"
_SCHEME_PREFIX = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")


@dataclass(frozen=True)
class FetchRequest:
    """Where to fetch content from and which ConfigMap data key receives it."""

    into_key: str
    from_site: str

    @property
    def host(self) -> str:
        return urlsplit(self.from_site).hostname or ""


def parse_annotation(value: str) -> FetchRequest:
    """Parse an annotation value such as ``joke=curl-a-joke.herokuapp.com``.

    Exactly one ``=`` is required.  When the site part does not start with a
    ``scheme://`` prefix it is treated as a bare host and ``http://`` is prefixed.
    """
    parts = value.split("=")
    if len(parts) != 2:
        raise AnnotationFormatError(f"unexpected value provided for annotation data: {value!r}")

    into_key, site = (part.strip() for part in parts)
    if not into_key:
        raise AnnotationFormatError(f"annotation data has an empty key: {value!r}")
    if not site:
        raise AnnotationFormatError(f"annotation data has an empty site: {value!r}")

    if not _SCHEME_PREFIX.match(site):
        site = f"http://{site}"

    try:
        parsed = urlsplit(site)
        # Accessing .port validates the port component.
        parsed.port
    except ValueError as exc:
        raise AnnotationFormatError(f"invalid site URL {site!r}: {exc}") from exc
    if not parsed.scheme or not parsed.netloc:
        raise AnnotationFormatError(f"site is not an absolute URL: {site!r}")

    return FetchRequest(into_key=into_key, from_site=site)


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split ``namespace/name`` into its parts; a bare ``name`` has no namespace."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def strip_namespace_from_name(raw: str) -> str:
    """Drop the ``namespace/`` prefix carried by queue keys, if there is one."""
    parts = raw.split("/")
    if len(parts) != 2:
        return raw
    return parts[1]
