"""Tests for endpoint URL normalization and validation."""

import pytest

from provswitch.core.endpoints import normalize, validate
from provswitch.core.errors import InvalidUrlError


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://api.example.com", "https://api.example.com"),
        ("  https://api.example.com/  ", "https://api.example.com"),
        ("https://api.example.com///", "https://api.example.com"),
        ("https://api.example.com/v1/", "https://api.example.com/v1"),
        ("", ""),
        (None, ""),
        ("   ", ""),
    ],
)
def test_normalize(raw, expected):
    assert normalize(raw) == expected


def test_normalize_is_idempotent():
    for raw in ["https://a.example/", " http://b.example//", "https://c.example/path/"]:
        once = normalize(raw)
        assert normalize(once) == once


def test_validate_returns_canonical_form():
    assert validate(" https://relay.example.com/api/ ") == "https://relay.example.com/api"
    assert validate("HTTP://relay.example.com:8080") == "HTTP://relay.example.com:8080"


def test_validate_rejects_empty_input():
    with pytest.raises(InvalidUrlError) as excinfo:
        validate("   ")
    assert excinfo.value.reason == "empty"
    assert excinfo.value.error_code == "invalid_url"


@pytest.mark.parametrize("raw", ["ftp://files.example.com", "ws://socket.example.com", "file:///etc/hosts"])
def test_validate_rejects_other_schemes(raw):
    with pytest.raises(InvalidUrlError) as excinfo:
        validate(raw)
    assert excinfo.value.reason == "unsupported_scheme"


@pytest.mark.parametrize("raw", ["not a url", "api.example.com", "https://", "http://host:notaport"])
def test_validate_rejects_malformed(raw):
    with pytest.raises(InvalidUrlError) as excinfo:
        validate(raw)
    assert excinfo.value.reason == "malformed"
