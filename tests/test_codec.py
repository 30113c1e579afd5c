import base64

import pytest
from pydantic import ValidationError

from resilient_fetch.cache import CacheStats
from resilient_fetch.codec import decode_target, encode_cache_stats, encode_result
from resilient_fetch.models import ErrorKind, FetchResult, FetchStatus, RenderHint, Strategy, WaitKind


def test_decode_target_minimal():
    target = decode_target({"url": "https://Example.com/x?b=1&a=2"})

    assert target.url == "https://example.com/x?a=2&b=1"
    assert target.render is RenderHint.AUTO
    assert target.rules == "page"
    assert target.method == "GET"


def test_decode_target_full():
    target = decode_target({
        "url": "https://example.com/graphql",
        "render": "browser",
        "rules": "profile",
        "wait": {"kind": "selector", "selector": "#app"},
        "method": "POST",
        "payload": {"query": "{ user }"},
    })

    assert target.render is RenderHint.BROWSER
    assert target.wait.kind is WaitKind.SELECTOR
    assert target.wait.selector == "#app"
    assert target.payload == {"query": "{ user }"}


@pytest.mark.parametrize("body", [
    {},
    {"url": "https://example.com/", "render": "sometimes"},
    {"url": "https://example.com/", "wait": {"kind": "selector"}},
    {"url": "https://example.com/", "unexpected": 1},
    {"url": "https://example.com/", "method": "DELETE"},
])
def test_decode_target_rejects_invalid_requests(body):
    with pytest.raises(ValidationError):
        decode_target(body)


def test_decode_target_rejects_relative_url():
    with pytest.raises(ValueError):
        decode_target({"url": "/relative"})


def test_encode_success_result():
    result = FetchResult(
        url="https://example.com/",
        status=FetchStatus.SUCCESS,
        strategy=Strategy.BROWSER,
        attempts=2,
        latency_s=0.123456,
        raw_content=b"<html></html>",
        extracted={"title": "x"},
        status_code=200,
    )

    data = encode_result(result, include_raw=True)

    assert data["status"] == "success"
    assert data["ok"] is True
    assert data["strategy"] == "browser"
    assert data["latency_s"] == 0.1235
    assert data["extracted"] == {"title": "x"}
    assert base64.b64decode(data["raw_content_b64"]) == b"<html></html>"


def test_encode_failure_result_omits_raw_by_default():
    result = FetchResult(
        url="https://example.com/",
        status=FetchStatus.TRANSIENT_FAILURE,
        strategy=Strategy.HTTP,
        attempts=3,
        error_kind=ErrorKind.TIMEOUT,
        error="timed out",
    )

    data = encode_result(result)

    assert data["error_kind"] == "timeout"
    assert data["retry_later"] is True
    assert "raw_content_b64" not in data


def test_encode_cache_stats():
    stats = CacheStats(size=3, capacity=10, hits=3, misses=1, evictions=0, expirations=2)
    assert encode_cache_stats(stats) == {
        "size": 3,
        "capacity": 10,
        "hits": 3,
        "misses": 1,
        "hit_rate": 0.75,
        "miss_rate": 0.25,
        "evictions": 0,
        "expirations": 2,
    }
