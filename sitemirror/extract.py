import logging
import os
import re
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Set, Tuple, Union
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from .errors import InvalidUrl
from .paths import resolve
from .policy import ResourceKind, is_same_site

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
BACKGROUND_DECL_RE = re.compile(r"background(?:-image)?\s*:([^;{}]*)", re.IGNORECASE)
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")

PDF_EXTS = {".pdf"}
VIDEO_EXTS = {".mp4", ".webm", ".mov", ".m4v", ".ogv", ".avi", ".mkv", ".wmv", ".flv"}

Markup = Union[str, bytes, BeautifulSoup]


@dataclass(frozen=True)
class ResourceReference:
    original_url: str
    kind: ResourceKind


# -------------------- HTML utils --------------------


def bs4_parse(html: Union[str, bytes]) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def as_soup(html: Markup) -> BeautifulSoup:
    if isinstance(html, BeautifulSoup):
        return html
    if isinstance(html, bytes):
        html = html.decode("utf-8", errors="replace")
    return bs4_parse(html)


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag is None:
        return fallback
    href = tag.get("href")
    if not isinstance(href, str) or not href.strip():
        return fallback
    try:
        return resolve(fallback, href)
    except InvalidUrl:
        return fallback


def rel_values(tag) -> Set[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return {r.lower() for r in rel}


def parse_srcset(v: str) -> List[str]:
    urls: List[str] = []
    if not v:
        return urls
    for cand in SRCSET_SPLIT_RE.split(v.strip()):
        if not cand:
            continue
        parts = WS_RE.split(cand.strip())
        if parts and parts[0]:
            urls.append(parts[0])
    return urls


def css_background_urls(css_text: str) -> Iterator[str]:
    for decl in BACKGROUND_DECL_RE.finditer(css_text):
        for m in CSS_URL_RE.finditer(decl.group(1)):
            yield m.group(2).strip()


def _reference(base: str, raw: Optional[str], kind: ResourceKind) -> Optional[ResourceReference]:
    if not isinstance(raw, str):
        return None
    try:
        return ResourceReference(resolve(base, raw), kind)
    except InvalidUrl as e:
        logging.debug("skip reference: %s", e)
        return None


def _references(
    base: str, raws: Iterable[Optional[str]], kind: ResourceKind
) -> Iterator[ResourceReference]:
    for raw in raws:
        ref = _reference(base, raw, kind)
        if ref is not None:
            yield ref


# -------------------- Extraction --------------------


def extract_from_html(base_url: str, html: Markup) -> Iterator[ResourceReference]:
    """Yield typed references found in an HTML document, in document order.

    ``<link rel=stylesheet>`` is a stylesheet, ``<script src>`` a script,
    ``<img src|srcset>`` and ``<source srcset>`` images, ``<a href>`` a page,
    and ``background``/``background-image`` urls in ``style`` attributes and
    ``<style>`` blocks are images. Unusable references are dropped.
    """
    soup = as_soup(html)
    base = effective_base_url(soup, base_url)
    for tag in soup.find_all(True):
        name = tag.name
        if name == "link" and "stylesheet" in rel_values(tag):
            yield from _references(base, [tag.get("href")], ResourceKind.STYLESHEET)
        elif name == "script":
            yield from _references(base, [tag.get("src")], ResourceKind.SCRIPT)
        elif name == "img":
            yield from _references(base, [tag.get("src")], ResourceKind.IMAGE)
            yield from _references(
                base, parse_srcset(tag.get("srcset") or ""), ResourceKind.IMAGE
            )
        elif name == "source":
            yield from _references(
                base, parse_srcset(tag.get("srcset") or ""), ResourceKind.IMAGE
            )
        elif name == "a":
            yield from _references(base, [tag.get("href")], ResourceKind.PAGE)
        elif name == "style":
            yield from extract_from_css(base, tag.string or "")
        style = tag.get("style")
        if isinstance(style, str) and style:
            yield from extract_from_css(base, style)


def extract_from_css(base_url: str, css: Union[str, bytes]) -> Iterator[ResourceReference]:
    if isinstance(css, bytes):
        css = css.decode("utf-8", errors="replace")
    yield from _references(base_url, css_background_urls(css), ResourceKind.IMAGE)


def media_kind(url: str) -> Optional[ResourceKind]:
    ext = os.path.splitext(urlsplit(url).path)[1].lower()
    if ext in PDF_EXTS:
        return ResourceKind.PDF
    if ext in VIDEO_EXTS:
        return ResourceKind.VIDEO
    return None


def extract_additional_media_links(
    base_url: str, html: Markup, site_host: str
) -> Iterator[Tuple[str, ResourceKind]]:
    """PDF and video links on other hosts that the tag scan does not fetch.

    Looks at ``href``, ``src``, ``data-*`` and inline ``style`` attributes of
    every element. Same-site media is left to the primary scan.
    """
    soup = as_soup(html)
    base = effective_base_url(soup, base_url)
    seen: Set[str] = set()
    for tag in soup.find_all(True):
        for attr, value in tag.attrs.items():
            if not isinstance(value, str):
                continue
            attr = attr.lower()
            if attr in ("href", "src") or attr.startswith("data-"):
                raws = [value]
            elif attr == "style":
                raws = [m.group(2).strip() for m in CSS_URL_RE.finditer(value)]
            else:
                continue
            for raw in raws:
                try:
                    url = resolve(base, raw)
                except InvalidUrl:
                    continue
                kind = media_kind(url)
                if kind is None or url in seen or is_same_site(url, site_host):
                    continue
                seen.add(url)
                yield url, kind
