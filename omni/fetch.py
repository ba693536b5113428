"""The fetch_url tool: download a web page and return it as text or raw HTML."""

import html.parser
import ipaddress
import logging
import re
import socket
import urllib.error
import urllib.parse
import urllib.request

logger = logging.getLogger(__name__)

MAX_DOWNLOAD_BYTES = 5 * 1024 * 1024
MAX_OUTPUT_BYTES = 50 * 1024
MAX_REDIRECTS = 10

USER_AGENT = "omni/0.1 (+https://pypi.org/project/omni-cli/)"

_TEXTUAL_TYPES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/xhtml+xml",
        "application/javascript",
        "application/rss+xml",
        "application/atom+xml",
    }
)

_BREAK_TAGS = frozenset(
    "p div br hr h1 h2 h3 h4 h5 h6 li tr td th blockquote pre dt dd "
    "section article header footer nav main table figure figcaption".split()
)
_HIDDEN_TAGS = frozenset({"script", "style", "noscript", "svg", "template"})


class FetchError(Exception):
    pass


class _Redirect(Exception):
    def __init__(self, location: str):
        self.location = location


class _RaiseOnRedirect(urllib.request.HTTPRedirectHandler):
    """Surface redirects so every hop is re-checked before it is followed."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        raise _Redirect(newurl)


class _Text(html.parser.HTMLParser):
    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.chunks: list[str] = []
        self.hidden = 0

    def handle_starttag(self, tag, attrs):
        if tag in _HIDDEN_TAGS:
            self.hidden += 1
        elif tag in _BREAK_TAGS and not self.hidden:
            self.chunks.append("\n")

    def handle_endtag(self, tag):
        if tag in _HIDDEN_TAGS:
            self.hidden = max(0, self.hidden - 1)
        elif tag in _BREAK_TAGS and not self.hidden:
            self.chunks.append("\n")

    def handle_data(self, data):
        if not self.hidden:
            self.chunks.append(data)


def html_to_text(body: str) -> str:
    parser = _Text()
    parser.feed(body)
    parser.close()
    text = re.sub(r"[^\S\n]+", " ", "".join(parser.chunks))
    text = re.sub(r" *\n *", "\n", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def check_url(url: str) -> None:
    """Raise FetchError unless url is http(s) and resolves to public addresses only."""
    parts = urllib.parse.urlparse(url)
    if parts.scheme not in ("http", "https"):
        raise FetchError(f"url scheme {parts.scheme!r} is not allowed, use http or https")
    host = parts.hostname
    if not host:
        raise FetchError("could not parse hostname from url")
    try:
        infos = socket.getaddrinfo(host, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise FetchError(f"could not resolve hostname {host!r}: {e}") from e
    for *_, sockaddr in infos:
        addr = ipaddress.ip_address(sockaddr[0])
        if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
            raise FetchError(f"url resolves to a private address ({addr}), refusing to fetch")


def _charset(content_type: str) -> str | None:
    m = re.search(r"charset=[\"']?([\w.:-]+)", content_type, re.I)
    return m.group(1) if m else None


def _decode(data: bytes, content_type: str) -> str:
    for encoding in (_charset(content_type), "utf-8"):
        if not encoding:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("latin-1")


def download(url: str, timeout: int) -> tuple[str, str]:
    """Follow redirects manually and return (body, mime type)."""
    opener = urllib.request.build_opener(_RaiseOnRedirect)
    for _ in range(MAX_REDIRECTS + 1):
        check_url(url)
        req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
        try:
            resp = opener.open(req, timeout=timeout)
        except _Redirect as r:
            url = urllib.parse.urljoin(url, r.location)
            logger.debug("redirected to %s", url)
            continue
        except urllib.error.HTTPError as e:
            raise FetchError(f"HTTP {e.code} {e.reason}") from e
        except urllib.error.URLError as e:
            raise FetchError(f"could not connect: {e.reason}") from e
        except TimeoutError as e:
            raise FetchError(f"request timed out after {timeout} seconds") from e
        break
    else:
        raise FetchError(f"too many redirects (limit is {MAX_REDIRECTS})")

    with resp:
        content_type = resp.headers.get("Content-Type", "")
        mime = content_type.split(";")[0].strip().lower()
        if mime and not mime.startswith("text/") and mime not in _TEXTUAL_TYPES:
            raise FetchError(f"binary content ({mime}) cannot be shown as text")
        try:
            data = resp.read(MAX_DOWNLOAD_BYTES + 1)
        except (TimeoutError, OSError) as e:
            raise FetchError(f"failed to read response: {e}") from e

    if len(data) > MAX_DOWNLOAD_BYTES:
        raise FetchError("response is larger than 5 MB")
    if b"\x00" in data[:8192]:
        raise FetchError("binary content detected")
    return _decode(data, content_type), mime


def fetch_url(url: str, format: str = "text", timeout: int = 30) -> str:
    """Fetch url and return its content; failures are "error: ..." strings."""
    if format not in ("text", "html"):
        return f"error: invalid format {format!r}, must be 'text' or 'html'"
    if not isinstance(url, str) or not url:
        return "error: url must be a non-empty string"
    try:
        timeout = max(1, min(int(timeout), 120))
    except (TypeError, ValueError):
        return f"error: timeout must be a number, got {timeout!r}"

    try:
        body, mime = download(url, timeout)
    except FetchError as e:
        return f"error: {e}"

    output = body if format == "html" or "html" not in mime else html_to_text(body)
    encoded = output.encode("utf-8")
    if len(encoded) > MAX_OUTPUT_BYTES:
        output = (
            encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
            + f"\n[content truncated at {MAX_OUTPUT_BYTES} bytes, total was {len(encoded)} bytes]"
        )
    return output
