from __future__ import annotations

import pytest

from curlme.src.annotation import (
    parse_annotation,
    split_meta_namespace_key,
    strip_namespace_from_name,
)
from curlme.src.errors import AnnotationFormatError


def test_parse_annotation_bare_host_defaults_to_http() -> None:
    request = parse_annotation("joke=curl-a-joke.herokuapp.com")

    assert request.into_key == "joke"
    assert request.host == "curl-a-joke.herokuapp.com"
    assert request.from_site == "http://curl-a-joke.herokuapp.com"


@pytest.mark.parametrize(
    "host",
    ["example.com", "localhost", "api.internal", "10.0.0.7", "httpbin.org", "myhttpcache.local"],
)
def test_parse_annotation_key_and_host(host: str) -> None:
    request = parse_annotation(f"k={host}")

    assert request.into_key == "k"
    assert request.host == host
    assert request.from_site.startswith("http://")


def test_parse_annotation_keeps_path() -> None:
    request = parse_annotation("joke=example.com/joke")

    assert request.host == "example.com"
    assert request.from_site == "http://example.com/joke"


def test_parse_annotation_keeps_explicit_scheme() -> None:
    request = parse_annotation("page=https://example.com/page")

    assert request.from_site == "https://example.com/page"


@pytest.mark.parametrize(
    "value",
    [
        "bad-format-no-equals",
        "a=b=c",
        "",
        "key=http://example.com/?q=1",
    ],
)
def test_parse_annotation_requires_exactly_one_separator(value: str) -> None:
    with pytest.raises(AnnotationFormatError, match="unexpected value"):
        parse_annotation(value)


@pytest.mark.parametrize("value", ["=example.com", "joke="])
def test_parse_annotation_rejects_empty_parts(value: str) -> None:
    with pytest.raises(AnnotationFormatError):
        parse_annotation(value)


def test_parse_annotation_rejects_invalid_port() -> None:
    with pytest.raises(AnnotationFormatError, match="invalid site URL"):
        parse_annotation("joke=example.com:notaport")


def test_strip_namespace_from_name() -> None:
    assert strip_namespace_from_name("ns/name") == "name"
    assert strip_namespace_from_name("name") == "name"
    assert strip_namespace_from_name("a/b/c") == "a/b/c"


def test_split_meta_namespace_key() -> None:
    assert split_meta_namespace_key("ns/name") == ("ns", "name")
    assert split_meta_namespace_key("name") == ("", "name")
    with pytest.raises(ValueError):
        split_meta_namespace_key("a/b/c")
