"""Point every reference in a fetched document at its mirrored copy.

Rewriting works on the document text, so whatever is not a reference stays
byte for byte as it came from the server. Three passes run in order:

1. one regex pass over attribute values (``src``, ``href``, ``srcset``,
   ``poster``, ``data-*``) and CSS ``url(...)`` tokens, each resolved against
   the document base and replaced only on an exact URL match;
2. one pass over literal absolute URLs left anywhere else in the text (inline
   scripts, JSON blobs), matched longest first;
3. when images were converted to WebP, a file-name pass and a blanket
   extension pass, both with already-final text masked out.

Each pass is a single ``re.sub``, so no replacement is ever scanned again by
the pass that produced it.
"""

import html
import posixpath
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from .errors import InvalidUrl
from .extract import SRCSET_SPLIT_RE, WS_RE
from .paths import WEBP_SOURCE_EXT_RE, relative_reference, resolve
from .policy import PriorityClass, ResourceKind, priority_class

TOKEN_RE = re.compile(
    r"(?P<attr>\b(?P<name>srcset|src|href|poster|data-[\w-]+)\s*=\s*"
    r"(?:(?P<q>[\"'])(?P<qv>.*?)(?P=q)|(?P<bv>[^\s\"'=<>`]+)))"
    r"|(?P<css>url\(\s*(?P<cq>[\"']?)(?P<cv>[^)\"']+)(?P=cq)\s*\))",
    re.IGNORECASE | re.DOTALL,
)
BLANKET_EXT_RE = re.compile(r"\.(?:jpe?g|png)(?!\w)", re.IGNORECASE)
WEBP_EXT_RE = re.compile(r"\.webp", re.IGNORECASE)
MASK_RE = re.compile(r"\x00(\d+)\x00")


@dataclass(frozen=True)
class RewriteTarget:
    url: str
    local_path: str
    kind: ResourceKind
    # local path before WebP translation, when a conversion happened
    webp_from: Optional[str] = None

    @property
    def priority(self) -> PriorityClass:
        return priority_class(self.kind)


# -------------------- Token pass --------------------


def _token_rewriter(
    document_path: str, base_url: str, mapping: Dict[str, RewriteTarget]
) -> Callable[["re.Match"], str]:
    def map_url(raw: str) -> Optional[str]:
        value = html.unescape(raw.strip())
        value, sep, frag = value.partition("#")
        try:
            url = resolve(base_url, value)
        except InvalidUrl:
            return None
        t = mapping.get(url)
        if t is None:
            return None
        return relative_reference(document_path, t.local_path) + sep + frag

    def map_srcset(raw: str) -> Optional[str]:
        parts: List[Tuple[str, str]] = []
        changed = False
        for cand in SRCSET_SPLIT_RE.split(raw.strip()):
            if not cand:
                continue
            comp = WS_RE.split(cand.strip())
            new = map_url(comp[0])
            changed = changed or new is not None
            parts.append((new or comp[0], " ".join(comp[1:])))
        if not changed:
            return None
        return ", ".join(f"{u} {d}".strip() for u, d in parts)

    def repl(m: "re.Match") -> str:
        token = m.group(0)
        if m.group("attr"):
            group = "qv" if m.group("qv") is not None else "bv"
            mapper = map_srcset if m.group("name").lower() == "srcset" else map_url
        else:
            group, mapper = "cv", map_url
        new = mapper(m.group(group))
        if new is None:
            return token
        start, end = m.start(group) - m.start(), m.end(group) - m.start()
        return token[:start] + new + token[end:]

    return repl


# -------------------- Literal pass --------------------


def _literal_pass(
    text: str, document_path: str, targets: List[RewriteTarget]
) -> str:
    # Equal lengths never overlap, so priority only orders ties for
    # readability of the pattern; length is what keeps a short URL from
    # matching inside a longer one.
    ordered = sorted(targets, key=lambda t: (-len(t.url), t.priority, t.url))
    if not ordered:
        return text
    by_url = {t.url: t for t in ordered}
    pattern = re.compile(
        r"(?<![\w.+-])(?:%s)(?![\w\-./~%%?])"
        % "|".join(re.escape(t.url) for t in ordered)
    )
    return pattern.sub(
        lambda m: relative_reference(document_path, by_url[m.group(0)].local_path),
        text,
    )


# -------------------- WebP passes --------------------


def _masked(text: str, keep: "re.Pattern", fn: Callable[[str], str]) -> str:
    if "\x00" in text:
        return text
    saved: List[str] = []

    def hide(m: "re.Match") -> str:
        saved.append(m.group(0))
        return "\x00%d\x00" % (len(saved) - 1)

    out = fn(keep.sub(hide, text))
    return MASK_RE.sub(lambda m: saved[int(m.group(1))], out)


def _protect_pattern(protected: Iterable[str]) -> "re.Pattern":
    literals = sorted({p for p in protected if p}, key=len, reverse=True)
    alts = [re.escape(p) for p in literals] + [WEBP_EXT_RE.pattern]
    return re.compile("|".join(alts), re.IGNORECASE)


def _filename_pass(text: str, converted: List[RewriteTarget]) -> str:
    stems = set()
    for t in converted:
        name = posixpath.basename(urlsplit(t.url).path)
        m = list(WEBP_SOURCE_EXT_RE.finditer(name))
        if m:
            stems.add(name[: m[-1].start()])
    if not stems:
        return text
    pattern = re.compile(
        r"(?<![\w.\-])(%s)\.(?:jpe?g|png)(?!\w)"
        % "|".join(re.escape(s) for s in sorted(stems, key=len, reverse=True)),
        re.IGNORECASE,
    )
    return pattern.sub(lambda m: m.group(1) + ".webp", text)


def _blanket_pass(text: str) -> str:
    return BLANKET_EXT_RE.sub(".webp", text)


# -------------------- Entry point --------------------


def rewrite_document(
    text: str,
    document_path: str,
    base_url: str,
    targets: Iterable[RewriteTarget],
    protected: Iterable[str] = (),
) -> str:
    """Rewrite ``text`` (the document stored at ``document_path``).

    ``targets`` are the successfully mirrored references; anything else keeps
    its remote URL. ``protected`` lists literal strings the WebP passes must
    leave alone, such as the paths of images whose conversion fell back to
    the original bytes.
    """
    targets = list(targets)
    mapping = {t.url: t for t in targets}
    if not mapping:
        return text
    text = TOKEN_RE.sub(_token_rewriter(document_path, base_url, mapping), text)
    text = _literal_pass(text, document_path, list(mapping.values()))

    converted = [t for t in mapping.values() if t.webp_from]
    if converted:
        literals = set()
        for p in protected:
            literals.add(p)
            if "://" not in p and not p.startswith("/"):
                literals.add(relative_reference(document_path, p))
        keep = _protect_pattern(literals)
        text = _masked(text, keep, lambda s: _filename_pass(s, converted))
        text = _masked(text, keep, _blanket_pass)
    return text
