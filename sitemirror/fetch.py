import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Tuple
from urllib import robotparser
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import TransportError

DEFAULT_USER_AGENT = "SiteMirror/1.0"
DEFAULT_TIMEOUT = 30.0

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.IGNORECASE)


@dataclass
class FetchResult:
    url: str
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                return (v or "").lower()
        return ""


# fetch(url) -> FetchResult, raising TransportError when no response arrives
Fetcher = Callable[[str], FetchResult]


# -------------------- HTTP --------------------


def build_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=3,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=128, pool_maxsize=128)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    s.headers["User-Agent"] = user_agent
    return s


class HttpFetcher:
    """The production fetch capability, backed by a shared requests session."""

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.session = session or build_session(user_agent)

    def __call__(self, url: str) -> FetchResult:
        try:
            r = self.session.get(url, timeout=self.timeout)
            body = r.content
        except requests.RequestException as e:
            raise TransportError(url, e) from e
        return FetchResult(url=url, status=r.status_code, headers=dict(r.headers), body=body)

    def close(self) -> None:
        self.session.close()


# -------------------- Content sniffing --------------------


def is_html(result: FetchResult) -> bool:
    ct = result.content_type
    if "text/html" in ct or "application/xhtml+xml" in ct:
        return True
    head = result.body[:512].lstrip().lower()
    return head.startswith(b"<!doctype") or head.startswith(b"<html")


def is_css(url: str, result: FetchResult) -> bool:
    if "text/css" in result.content_type:
        return True
    return url.split("#", 1)[0].split("?", 1)[0].lower().endswith(".css")


def charset_of(result: FetchResult) -> str:
    m = CHARSET_RE.search(result.content_type)
    if m:
        return m.group(1).lower()
    return "utf-8"


def decode_text(body: bytes, encoding: str) -> Tuple[str, str]:
    """Decode so that :func:`encode_text` gives back the same bytes.

    Undecodable bytes survive as surrogate escapes; an unknown charset falls
    back to utf-8.
    """
    try:
        return body.decode(encoding, errors="surrogateescape"), encoding
    except LookupError:
        return body.decode("utf-8", errors="surrogateescape"), "utf-8"


def encode_text(text: str, encoding: str) -> bytes:
    return text.encode(encoding, errors="surrogateescape")


# -------------------- Robots --------------------


def fetch_robots(fetch: Fetcher, base_url: str) -> Optional[robotparser.RobotFileParser]:
    robots_url = urljoin(base_url, "/robots.txt")
    try:
        r = fetch(robots_url)
    except TransportError as e:
        logging.info("robots.txt unavailable: %s", e)
        return None
    if not r.ok or not r.body:
        return None
    rp = robotparser.RobotFileParser()
    rp.parse(r.body.decode("utf-8", errors="replace").splitlines())
    return rp


def robots_allows(
    robots: Optional[robotparser.RobotFileParser], user_agent: str, url: str
) -> bool:
    if robots is None:
        return True
    return robots.can_fetch(user_agent, url)
