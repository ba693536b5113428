"""Tests for fetch.py: the fetch_url tool."""

import pytest

from omni import fetch
from omni.fetch import MAX_OUTPUT_BYTES, MAX_REDIRECTS, FetchError, check_url, fetch_url, html_to_text


# =========================================================================
# html_to_text
# =========================================================================


class TestHtmlToText:
    def test_basic_text_extraction(self):
        assert html_to_text("<html><body><p>Hello world</p></body></html>") == "Hello world"

    def test_strips_script_and_style(self):
        html = (
            "<html><head><style>body { color: red; }</style></head>"
            "<body><script>alert('x')</script><p>visible</p></body></html>"
        )
        assert html_to_text(html) == "visible"

    def test_block_tags_break_lines(self):
        text = html_to_text("<h1>Title</h1><p>one</p><ul><li>a</li><li>b</li></ul>")
        assert text.splitlines() == ["Title", "", "one", "", "a", "", "b"]

    def test_entities_decoded(self):
        assert html_to_text("<p>fish &amp; chips&nbsp;</p>") == "fish & chips"


# =========================================================================
# URL safety
# =========================================================================


class TestCheckUrl:
    @pytest.mark.parametrize("url", ["ftp://example.com/x", "file:///etc/passwd", "javascript:alert(1)"])
    def test_scheme_rejected(self, url):
        with pytest.raises(FetchError, match="not allowed"):
            check_url(url)

    @pytest.mark.parametrize(
        "url",
        ["http://127.0.0.1/", "http://10.1.2.3:8080/admin", "http://192.168.0.1/"],
    )
    def test_private_addresses_rejected(self, url):
        with pytest.raises(FetchError, match="private address"):
            check_url(url)

    def test_missing_host(self):
        with pytest.raises(FetchError, match="hostname"):
            check_url("http:///path")


# =========================================================================
# Downloading
# =========================================================================


class _Response:
    def __init__(self, body, content_type="text/html; charset=utf-8"):
        self.body = body
        self.headers = {"Content-Type": content_type}

    def read(self, n):
        return self.body[:n]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class _Opener:
    """Redirects through `hops`, then serves `response`."""

    def __init__(self, hops, response):
        self.hops = list(hops)
        self.response = response
        self.opened = []

    def open(self, req, timeout):
        self.opened.append(req.full_url)
        if self.hops:
            raise fetch._Redirect(self.hops.pop(0))
        return self.response


@pytest.fixture
def checked(monkeypatch):
    urls = []
    monkeypatch.setattr(fetch, "check_url", urls.append)
    return urls


def _install(monkeypatch, opener):
    monkeypatch.setattr(fetch.urllib.request, "build_opener", lambda *handlers: opener)


class TestDownload:
    def test_every_redirect_hop_is_checked(self, monkeypatch, checked):
        opener = _Opener(["/next", "https://other.example/final"], _Response(b"<p>ok</p>"))
        _install(monkeypatch, opener)
        body, mime = fetch.download("https://example.com/start", 5)
        assert body == "<p>ok</p>"
        assert mime == "text/html"
        assert checked == [
            "https://example.com/start",
            "https://example.com/next",
            "https://other.example/final",
        ]

    def test_too_many_redirects(self, monkeypatch, checked):
        _install(monkeypatch, _Opener(["/again"] * (MAX_REDIRECTS + 1), _Response(b"")))
        with pytest.raises(FetchError, match="too many redirects"):
            fetch.download("https://example.com/", 5)

    def test_binary_mime_rejected(self, monkeypatch, checked):
        _install(monkeypatch, _Opener([], _Response(b"\x89PNG", "image/png")))
        with pytest.raises(FetchError, match="image/png"):
            fetch.download("https://example.com/logo.png", 5)

    def test_nul_bytes_rejected(self, monkeypatch, checked):
        _install(monkeypatch, _Opener([], _Response(b"abc\x00def", "text/plain")))
        with pytest.raises(FetchError, match="binary content"):
            fetch.download("https://example.com/x", 5)

    def test_charset_respected(self, monkeypatch, checked):
        body = "café".encode("latin-1")
        _install(monkeypatch, _Opener([], _Response(body, "text/plain; charset=iso-8859-1")))
        assert fetch.download("https://example.com/x", 5) == ("café", "text/plain")


# =========================================================================
# fetch_url
# =========================================================================


class TestFetchUrl:
    def test_html_converted_to_text(self, monkeypatch):
        monkeypatch.setattr(fetch, "download", lambda url, timeout: ("<p>Hi</p><script>x</script>", "text/html"))
        assert fetch_url("https://example.com") == "Hi"

    def test_raw_html(self, monkeypatch):
        monkeypatch.setattr(fetch, "download", lambda url, timeout: ("<p>Hi</p>", "text/html"))
        assert fetch_url("https://example.com", format="html") == "<p>Hi</p>"

    def test_plain_text_untouched(self, monkeypatch):
        monkeypatch.setattr(fetch, "download", lambda url, timeout: ('{"a": 1}', "application/json"))
        assert fetch_url("https://example.com/data.json") == '{"a": 1}'

    def test_invalid_format(self):
        assert fetch_url("https://example.com", format="markdown").startswith("error: invalid format")

    def test_errors_become_strings(self, monkeypatch):
        def fail(url, timeout):
            raise FetchError("HTTP 404 Not Found")

        monkeypatch.setattr(fetch, "download", fail)
        assert fetch_url("https://example.com/missing") == "error: HTTP 404 Not Found"

    def test_timeout_clamped(self, monkeypatch):
        seen = []
        monkeypatch.setattr(fetch, "download", lambda url, timeout: seen.append(timeout) or ("", "text/plain"))
        fetch_url("https://example.com", timeout=9999)
        fetch_url("https://example.com", timeout=0)
        assert seen == [120, 1]

    def test_output_truncated(self, monkeypatch):
        big = "x" * (MAX_OUTPUT_BYTES + 100)
        monkeypatch.setattr(fetch, "download", lambda url, timeout: (big, "text/plain"))
        out = fetch_url("https://example.com/big")
        assert out.startswith("x" * 100)
        assert f"truncated at {MAX_OUTPUT_BYTES} bytes" in out
        assert len(out) < len(big)
