"""Mapping between remote URLs and paths inside the mirror tree.

Every function here is pure: the same input always yields the same path, so
a URL can be mapped again later (for rewriting, or on the next run) without
consulting any state.
"""

import posixpath
import re
from typing import Optional
from urllib.parse import urldefrag, urljoin, urlsplit, urlunsplit

from .errors import InvalidUrl

FETCHABLE_SCHEMES = {"http", "https"}
UNSAFE_PATH_CHARS_RE = re.compile(r"[^A-Za-z0-9/.\-]")
WEBP_SOURCE_EXT_RE = re.compile(r"\.(?:jpe?g|png)", re.IGNORECASE)
WEBP_SOURCE_SUFFIXES = (".jpg", ".jpeg", ".png")
INDEX_FILE = "index.html"
VENDOR_DIR = "vendor"


def resolve(base_url: str, reference: str) -> str:
    """Resolve ``reference`` against ``base_url`` and drop any fragment.

    Raises :class:`InvalidUrl` for empty references, bare fragments and
    anything that does not end up as an http(s) URL with a host
    (``data:``, ``mailto:``, ``tel:``, ``javascript:`` and friends).
    """
    if reference is None:
        raise InvalidUrl("", "empty reference")
    ref = reference.strip()
    if not ref:
        raise InvalidUrl(reference, "empty reference")
    if ref.startswith("#"):
        raise InvalidUrl(reference, "fragment-only reference")
    try:
        absolute = urljoin(base_url, ref)
        parts = urlsplit(absolute)
    except ValueError as e:
        raise InvalidUrl(reference, f"malformed url ({e})") from e
    if parts.scheme.lower() not in FETCHABLE_SCHEMES:
        raise InvalidUrl(reference, f"unsupported scheme {parts.scheme or 'none'}")
    if not parts.netloc:
        raise InvalidUrl(reference, "missing host")
    if not parts.path:
        absolute = urlunsplit(parts._replace(path="/"))
    return urldefrag(absolute)[0]


def host_of(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def sanitize_path(path: str) -> str:
    return UNSAFE_PATH_CHARS_RE.sub("_", path)


def _normalize_segments(path: str) -> str:
    segs = []
    for seg in path.split("/"):
        if not seg:
            continue
        # never let a mapped path climb out of the output root
        if seg in (".", ".."):
            seg = "_"
        segs.append(seg)
    return "/".join(segs)


def to_local_path(absolute_url: str, site_host: Optional[str] = None) -> str:
    """Map an absolute URL to its relative path inside the mirror.

    ``/`` and ``/dir/`` become ``index.html`` and ``dir/index.html``; a last
    segment without a dot is treated as a directory index. A query string is
    kept (sanitized) after the path. When ``site_host`` is given, URLs on any
    other host are placed under ``vendor/<host>/``.
    """
    parts = urlsplit(absolute_url)
    path = parts.path.lstrip("/")
    if not path:
        path = INDEX_FILE
    elif path.endswith("/"):
        path += INDEX_FILE
    elif "." not in path.rsplit("/", 1)[-1]:
        path += "/" + INDEX_FILE
    if parts.query:
        path = f"{path}?{parts.query}"
    local = _normalize_segments(sanitize_path(path))
    if site_host is not None and parts.netloc.lower() != site_host.lower():
        host_dir = sanitize_path(parts.netloc.lower()) or "host"
        local = f"{VENDOR_DIR}/{host_dir}/{local}"
    return local


def relative_reference(from_path: str, to_path: str) -> str:
    """Path that leads from the document at ``from_path`` to ``to_path``."""
    start = posixpath.dirname(from_path) or "."
    try:
        return posixpath.relpath(to_path, start)
    except ValueError:
        return to_path


def is_webp_candidate(url: str) -> bool:
    return urldefrag(url)[0].lower().endswith(WEBP_SOURCE_SUFFIXES)


def translate_to_webp(local_path: str, original_url: str) -> str:
    if not is_webp_candidate(original_url):
        return local_path
    matches = list(WEBP_SOURCE_EXT_RE.finditer(local_path))
    if not matches:
        return local_path
    last = matches[-1]
    return local_path[: last.start()] + ".webp" + local_path[last.end() :]
