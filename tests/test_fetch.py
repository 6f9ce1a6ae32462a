import pytest
import requests

from sitemirror.errors import TransportError
from sitemirror.fetch import (
    FetchResult,
    HttpFetcher,
    build_session,
    charset_of,
    decode_text,
    encode_text,
    fetch_robots,
    is_css,
    is_html,
    robots_allows,
)


def result(body=b"", content_type=None, status=200):
    headers = {"content-type": content_type} if content_type else {}
    return FetchResult("https://ex.com/x", status, headers, body)


def test_status():
    assert result(status=200).ok
    assert result(status=204).ok
    assert not result(status=301).ok
    assert not result(status=404).ok


def test_html_sniffing():
    assert is_html(result(b"", "text/html; charset=utf-8"))
    assert is_html(result(b"  <!DOCTYPE html><html>", "application/octet-stream"))
    assert is_html(result(b"<HTML><body>"))
    assert not is_html(result(b"%PDF-1.4", "application/pdf"))


def test_css_sniffing():
    assert is_css("https://ex.com/a", result(b"", "text/css"))
    assert is_css("https://ex.com/a.CSS?v=2", result(b""))
    assert not is_css("https://ex.com/a.js", result(b"", "application/javascript"))


def test_charset():
    assert charset_of(result(content_type="text/html; charset=ISO-8859-1")) == "iso-8859-1"
    assert charset_of(result(content_type="text/html")) == "utf-8"


def test_decode_keeps_bytes():
    body = "café ".encode("utf-8") + b"\xff\xfe broken"
    text, enc = decode_text(body, "utf-8")
    assert enc == "utf-8"
    assert encode_text(text, enc) == body


def test_unknown_charset_falls_back_to_utf8():
    text, enc = decode_text(b"plain", "x-no-such-charset")
    assert (text, enc) == ("plain", "utf-8")


def test_session_has_retries_and_agent():
    s = build_session("Tester/2")
    assert s.headers["User-Agent"] == "Tester/2"
    assert s.get_adapter("https://ex.com/").max_retries.total == 3


def test_http_fetcher_wraps_request_errors(monkeypatch):
    fetch = HttpFetcher(timeout=1)

    def boom(url, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(fetch.session, "get", boom)
    with pytest.raises(TransportError) as info:
        fetch("https://ex.com/")
    assert info.value.url == "https://ex.com/"
    fetch.close()


def test_robots(fetcher):
    fetcher.add(
        "https://ex.com/robots.txt",
        "User-agent: *\nDisallow: /private/\n",
        content_type="text/plain",
    )
    robots = fetch_robots(fetcher, "https://ex.com/blog/")
    assert robots is not None
    assert robots_allows(robots, "SiteMirror/1.0", "https://ex.com/blog/")
    assert not robots_allows(robots, "SiteMirror/1.0", "https://ex.com/private/x")
    assert robots_allows(None, "SiteMirror/1.0", "https://ex.com/private/x")


def test_missing_robots(fetcher):
    assert fetch_robots(fetcher, "https://ex.com/") is None
    fetcher.fail("https://other.com/robots.txt")
    assert fetch_robots(fetcher, "https://other.com/") is None
