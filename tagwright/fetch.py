"""Web page retrieval for <fetch> actions: download, decode, convert to markdown."""

import ipaddress
import socket
import urllib.error
import urllib.parse
import urllib.request

from html_to_markdown import convert

MAX_DOWNLOAD_BYTES = 5 * 1024 * 1024
MAX_PAGE_CHARS = 40_000
MAX_REDIRECTS = 10
DEFAULT_TIMEOUT = 30

HEADERS = {
    "User-Agent": "tagwright/0.1 (+https://pypi.org/project/tagwright/)",
    "Accept": "text/markdown,text/html,text/plain,application/json,*/*;q=0.8",
}

_TEXT_MIMES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/xhtml+xml",
        "application/javascript",
        "application/rss+xml",
        "application/atom+xml",
    }
)


class _Redirected(Exception):
    def __init__(self, location: str):
        self.location = location


class _StopRedirects(urllib.request.HTTPRedirectHandler):
    """Surface every redirect so each hop goes through the address check."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        raise _Redirected(newurl)


def check_url(url: str) -> str | None:
    """Error string for non-http(s) URLs or hosts resolving to internal addresses."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return f"error: only http and https URLs can be fetched, got {parsed.scheme!r}"
    host = parsed.hostname
    if not host:
        return f"error: no hostname in {url!r}"
    try:
        infos = socket.getaddrinfo(host, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        return f"error: could not resolve {host!r}: {e}"
    for *_, sockaddr in infos:
        addr = ipaddress.ip_address(sockaddr[0])
        if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
            return f"error: {host} resolves to internal address {addr}, refusing to fetch"
    return None


def _charset(content_type: str) -> str | None:
    for part in content_type.split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip("\"'")
    return None


def decode_body(data: bytes, content_type: str) -> str:
    for encoding in (_charset(content_type), "utf-8"):
        if not encoding:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("latin-1")


def page_to_text(body: str, mime: str) -> str:
    if mime in ("text/html", "application/xhtml+xml"):
        return convert(body).strip()
    return body.strip()


def fetch_url(url: str, prompt: str | None = None, timeout: int = DEFAULT_TIMEOUT) -> str:
    """Fetch url and return its content as markdown, or an ``error:`` string."""
    opener = urllib.request.build_opener(_StopRedirects)
    current = url
    for _ in range(MAX_REDIRECTS + 1):
        err = check_url(current)
        if err:
            return err
        try:
            resp = opener.open(urllib.request.Request(current, headers=HEADERS), timeout=timeout)
            break
        except _Redirected as r:
            current = urllib.parse.urljoin(current, r.location)
        except urllib.error.HTTPError as e:
            return f"error: HTTP {e.code} {e.reason}"
        except urllib.error.URLError as e:
            return f"error: could not connect to {urllib.parse.urlparse(current).hostname}: {e.reason}"
        except TimeoutError:
            return f"error: request timed out after {timeout}s"
    else:
        return f"error: too many redirects (limit is {MAX_REDIRECTS})"

    with resp:
        content_type = resp.headers.get("Content-Type", "")
        mime = content_type.split(";")[0].strip().lower()
        if mime and not mime.startswith("text/") and mime not in _TEXT_MIMES:
            return f"error: {mime} content cannot be shown as text"
        try:
            data = resp.read(MAX_DOWNLOAD_BYTES + 1)
        except (TimeoutError, OSError) as e:
            return f"error: failed to read response: {e}"

    if len(data) > MAX_DOWNLOAD_BYTES:
        return "error: response larger than 5MB"
    if b"\x00" in data[:8192]:
        return "error: binary content, cannot be shown as text"

    text = page_to_text(decode_body(data, content_type), mime)
    if len(text) > MAX_PAGE_CHARS:
        text = text[:MAX_PAGE_CHARS] + f"\n[page truncated at {MAX_PAGE_CHARS} characters]"
    if prompt:
        text = f"Looking for: {prompt}\n\n{text}"
    return text
