import heapq
import itertools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from threading import Event, Lock
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from .errors import TransportError
from .extract import (
    ResourceReference,
    bs4_parse,
    effective_base_url,
    extract_additional_media_links,
    extract_from_css,
    extract_from_html,
    media_kind,
)
from .fetch import (
    FetchResult,
    Fetcher,
    HttpFetcher,
    charset_of,
    decode_text,
    encode_text,
    fetch_robots,
    is_css,
    is_html,
    robots_allows,
)
from .images import transcode
from .ledger import DownloadLedger
from .paths import host_of, is_webp_candidate, resolve, to_local_path, translate_to_webp
from .policy import (
    PriorityClass,
    ResourceKind,
    allowed_by_filter,
    is_webp_eligible,
    priority_class,
    should_fetch,
)
from .rewrite import RewriteTarget, rewrite_document
from .settings import Settings
from .storage import local_file, write_file


class TaskState(Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class CrawlTask:
    url: str
    depth: int
    priority: PriorityClass = PriorityClass.HIGH


@dataclass
class ResourceOutcome:
    url: str
    kind: ResourceKind
    state: TaskState
    local_path: Optional[str] = None
    webp_from: Optional[str] = None

    def target(self) -> RewriteTarget:
        return RewriteTarget(self.url, self.local_path or "", self.kind, self.webp_from)


@dataclass
class MirrorStats:
    pages_done: int = 0
    pages_skipped: int = 0
    pages_failed: int = 0
    resources_fetched: int = 0
    resources_cached: int = 0
    resources_failed: int = 0
    images_converted: int = 0
    seed_state: Optional[TaskState] = None

    @property
    def seed_failed(self) -> bool:
        return self.seed_state is TaskState.FAILED


class ClaimSet:
    """Grow-only set with an atomic check-and-insert.

    A successful :meth:`claim` stays in flight until :meth:`settle`; other
    threads can :meth:`wait` for that. ``nests`` marks a holder that may
    itself wait on other claims while in flight (a stylesheet fetching its
    images). A caller that holds a claim never blocks on such a holder, so
    waits always end at a holder that cannot wait.
    """

    def __init__(self, init: Optional[Iterable[str]] = None):
        self._s: Set[str] = set(init or [])
        self._pending: Dict[str, Tuple[Event, bool]] = {}
        self._lock = Lock()

    def claim(self, url: str, nests: bool = False) -> bool:
        with self._lock:
            if url in self._s:
                return False
            self._s.add(url)
            self._pending[url] = (Event(), nests)
            return True

    def settle(self, url: str) -> None:
        with self._lock:
            pending = self._pending.pop(url, None)
        if pending is not None:
            pending[0].set()

    def wait(self, url: str, holding: bool = False) -> bool:
        """Block until the claim on ``url`` settles.

        Returns False without blocking when ``holding`` is set and the
        holder of ``url`` may be waiting too.
        """
        with self._lock:
            pending = self._pending.get(url)
        if pending is None:
            return True
        event, nests = pending
        if holding and nests:
            return False
        event.wait()
        return True

    def __contains__(self, url: str) -> bool:
        with self._lock:
            return url in self._s

    def __len__(self) -> int:
        with self._lock:
            return len(self._s)


# -------------------- Engine --------------------


class SiteMirror:
    """One mirror run: seed URL in, browsable tree under ``output_dir`` out.

    Pages are walked from an explicit priority worklist (lower priority class
    first, then shallower depth, then discovery order). Each page's
    stylesheets and scripts are materialized first, then its images and
    other media, then the page itself is rewritten and written, and only
    then are its links walked. ``fetch`` is any callable with the
    :data:`~sitemirror.fetch.Fetcher` signature; by default a requests
    session is used.
    """

    def __init__(
        self,
        base_url: str,
        output_dir: "Path | str",
        settings: Optional[Settings] = None,
        fetch: Optional[Fetcher] = None,
    ):
        self.settings = settings or Settings()
        # raises InvalidUrl: an unusable seed is the one fatal error
        self.base_url = resolve(base_url, base_url)
        self.site_host = urlsplit(self.base_url).netloc.lower()
        self.target_host = host_of(self.base_url)
        self.output_root = Path(output_dir).resolve()
        self.ledger_path = self.output_root / self.settings.ledger_name
        self._owns_fetch = fetch is None
        self.fetch: Fetcher = fetch or HttpFetcher(
            self.settings.user_agent, self.settings.timeout
        )

        self.ledger = DownloadLedger()
        self.visited = ClaimSet()
        self.claimed = ClaimSet()
        self.page_states: Dict[str, TaskState] = {}
        self.stats = MirrorStats()
        self.robots = None
        self._frontier: List[Tuple[int, int, int, str]] = []
        self._enqueued: Set[str] = set()
        self._seq = itertools.count()
        self._stats_lock = Lock()

    # ---- bookkeeping

    def _count(self, name: str, n: int = 1) -> None:
        with self._stats_lock:
            setattr(self.stats, name, getattr(self.stats, name) + n)

    def local_path(self, url: str) -> str:
        return to_local_path(url, self.site_host)

    def enqueue(self, url: str, depth: int) -> bool:
        if url in self._enqueued or url in self.visited:
            return False
        self._enqueued.add(url)
        task = CrawlTask(url, depth)
        heapq.heappush(self._frontier, (task.priority, depth, next(self._seq), url))
        self.page_states[url] = TaskState.PENDING
        return True

    def _pop(self) -> CrawlTask:
        priority, depth, _, url = heapq.heappop(self._frontier)
        return CrawlTask(url, depth, PriorityClass(priority))

    # ---- run

    def run(self) -> MirrorStats:
        self.output_root.mkdir(parents=True, exist_ok=True)
        if self.settings.clear_ledger:
            logging.info("clearing ledger %s", self.ledger_path)
            self.ledger = DownloadLedger()
        else:
            self.ledger = DownloadLedger.load(self.ledger_path)
        if not self.settings.ignore_robots:
            self.robots = fetch_robots(self.fetch, self.base_url)

        self.enqueue(self.base_url, 0)
        try:
            while self._frontier:
                task = self._pop()
                self.page_states[task.url] = TaskState.IN_FLIGHT
                state = self.process_page(task)
                self.visited.settle(task.url)
                self.page_states[task.url] = state
                if task.url == self.base_url and self.stats.seed_state is None:
                    self.stats.seed_state = state
                if state is TaskState.DONE:
                    self._count("pages_done")
                elif state is TaskState.SKIPPED:
                    self._count("pages_skipped")
                else:
                    self._count("pages_failed")
        except KeyboardInterrupt:
            logging.warning("Interrupted. Saving ledger.")
            raise
        finally:
            self.ledger.save(self.ledger_path)
            close = getattr(self.fetch, "close", None)
            if self._owns_fetch and close is not None:
                close()

        logging.info(
            "pages: %d done, %d skipped, %d failed; resources: %d fetched, "
            "%d cached, %d failed; %d images converted",
            self.stats.pages_done,
            self.stats.pages_skipped,
            self.stats.pages_failed,
            self.stats.resources_fetched,
            self.stats.resources_cached,
            self.stats.resources_failed,
            self.stats.images_converted,
        )
        return self.stats

    # ---- pages

    def process_page(self, task: CrawlTask) -> TaskState:
        url, depth = task.url, task.depth
        if not self.visited.claim(url):
            return TaskState.SKIPPED
        if not self.settings.depth_allowed(depth):
            logging.debug("over depth %d: %s", depth, url)
            return TaskState.SKIPPED
        if not robots_allows(self.robots, self.settings.user_agent, url):
            logging.info("robots disallow page: %s", url)
            return TaskState.SKIPPED
        if self.ledger.has(url):
            logging.debug("already mirrored: %s", url)
            return TaskState.SKIPPED
        # shared with resources: one fetch per URL, whatever refers to it
        if not self.claimed.claim(url):
            logging.debug("already fetched as a resource: %s", url)
            return TaskState.SKIPPED

        logging.info("fetch page depth=%d: %s", depth, url)
        try:
            result = self.fetch(url)
        except TransportError as e:
            logging.warning("error fetching page %s: %s", url, e)
            return TaskState.FAILED
        finally:
            # nothing runs in parallel with a page, so waiters only need the fetch done
            self.claimed.settle(url)
        if not result.ok:
            logging.warning("failed %s -> HTTP %s", url, result.status)
            return TaskState.FAILED

        if not is_html(result):
            outcome = self._materialize(url, self._binary_kind(url, result), result)
            return outcome.state
        return self._mirror_html(url, depth, result)

    def _binary_kind(self, url: str, result: FetchResult) -> ResourceKind:
        if is_css(url, result):
            return ResourceKind.STYLESHEET
        # written verbatim, never transcoded: the link to it is already final
        return media_kind(url) or ResourceKind.OTHER

    def _mirror_html(self, url: str, depth: int, result: FetchResult) -> TaskState:
        text, encoding = decode_text(result.body, charset_of(result))
        soup = bs4_parse(text)
        refs = list(extract_from_html(url, soup))
        refs.extend(
            ResourceReference(u, k)
            for u, k in extract_additional_media_links(url, soup, self.target_host)
        )
        critical, pages, normal = self.partition(refs)

        outcomes = self.fetch_resources(critical)
        outcomes += self.fetch_resources(normal)
        page_targets = self._follow_links(pages, depth)

        doc_path = self.local_path(url)
        # resources win over a page link to the same URL
        targets = page_targets + [o.target() for o in outcomes if o.local_path]
        html_out = rewrite_document(
            text,
            doc_path,
            effective_base_url(soup, url),
            targets,
            protected=self._protected(refs, targets),
        )

        if not allowed_by_filter(ResourceKind.PAGE, self.settings.only_resources):
            logging.debug("html filtered out, not writing %s", doc_path)
            return TaskState.DONE
        try:
            write_file(self.output_root, doc_path, encode_text(html_out, encoding))
        except OSError as e:
            logging.warning("failed to write %s: %s", doc_path, e)
            return TaskState.FAILED
        logging.info("saved page: %s -> %s", url, doc_path)
        return TaskState.DONE

    def partition(
        self, refs: Iterable[ResourceReference]
    ) -> Tuple[List[ResourceReference], List[ResourceReference], List[ResourceReference]]:
        groups: Dict[PriorityClass, List[ResourceReference]] = {
            PriorityClass.CRITICAL: [],
            PriorityClass.HIGH: [],
            PriorityClass.NORMAL: [],
        }
        seen: Set[Tuple[str, ResourceKind]] = set()
        for ref in refs:
            key = (ref.original_url, ref.kind)
            if key in seen:
                continue
            seen.add(key)
            if not should_fetch(
                ref.kind, ref.original_url, self.target_host, self.settings.only_resources
            ):
                logging.debug("skip %s: %s", ref.kind.value, ref.original_url)
                continue
            groups[priority_class(ref.kind)].append(ref)
        return (
            groups[PriorityClass.CRITICAL],
            groups[PriorityClass.HIGH],
            groups[PriorityClass.NORMAL],
        )

    def _follow_links(
        self, pages: List[ResourceReference], depth: int
    ) -> List[RewriteTarget]:
        child_depth = depth + 1
        follow = self.settings.depth_allowed(child_depth)
        targets: List[RewriteTarget] = []
        for ref in pages:
            url = ref.original_url
            known = url in self.visited or url in self._enqueued or self.ledger.has(url)
            if follow:
                self.enqueue(url, child_depth)
                known = True
            if known:
                local = self.ledger.get(url) or self.local_path(url)
                targets.append(RewriteTarget(url, local, ResourceKind.PAGE))
        return targets

    def _protected(
        self, refs: List[ResourceReference], targets: List[RewriteTarget]
    ) -> List[str]:
        # text the WebP passes must not touch: unconverted mirrored files and
        # images that still point at the remote server
        mapped = {t.url for t in targets}
        protected = [t.local_path for t in targets if not t.webp_from]
        protected += [
            r.original_url
            for r in refs
            if r.kind is ResourceKind.IMAGE and r.original_url not in mapped
        ]
        return protected

    # ---- resources

    def fetch_resources(self, refs: List[ResourceReference]) -> List[ResourceOutcome]:
        """Materialize ``refs``; distinct local paths may be fetched in parallel."""
        batch: List[ResourceReference] = []
        deferred: List[ResourceReference] = []
        paths: Set[str] = set()
        for ref in refs:
            p = self.local_path(ref.original_url)
            (deferred if p in paths else batch).append(ref)
            paths.add(p)

        workers = min(max(1, self.settings.max_concurrency), len(batch))
        if workers <= 1:
            outcomes = [self.fetch_resource(r) for r in batch]
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                outcomes = list(pool.map(self.fetch_resource, batch))
        outcomes.extend(self.fetch_resource(r) for r in deferred)
        return outcomes

    def _cached_path(self, url: str) -> Optional[str]:
        cached = self.ledger.get(url)
        if cached is not None:
            return cached
        plain = self.local_path(url)
        candidates = [plain]
        if self.settings.convert_to_webp and is_webp_candidate(url):
            candidates.insert(0, translate_to_webp(plain, url))
        for c in candidates:
            if local_file(self.output_root, c).is_file():
                self.ledger.record(url, c)
                return c
        return None

    def _known_outcome(self, url: str, kind: ResourceKind) -> ResourceOutcome:
        cached = self.ledger.get(url)
        if cached is None:
            # failed earlier in this run, or still being fetched by our own caller
            return ResourceOutcome(url, kind, TaskState.SKIPPED)
        plain = self.local_path(url)
        webp_from = plain if cached != plain and cached.endswith(".webp") else None
        return ResourceOutcome(url, kind, TaskState.SKIPPED, cached, webp_from)

    def fetch_resource(self, ref: ResourceReference, nested: bool = False) -> ResourceOutcome:
        """Mirror one resource at most once per run.

        A URL claimed by another thread is waited for and then reported from
        the ledger. ``nested`` is set by callers that hold a claim themselves.
        """
        url, kind = ref.original_url, ref.kind
        if not self.claimed.claim(url, nests=kind is ResourceKind.STYLESHEET):
            if not self.claimed.wait(url, holding=nested):
                logging.debug("not waiting on %s while it fetches its own refs", url)
            return self._known_outcome(url, kind)

        try:
            cached = self._cached_path(url)
            if cached is not None:
                logging.debug("skip %s (already mirrored to %s)", url, cached)
                self._count("resources_cached")
                return self._known_outcome(url, kind)
            try:
                result = self.fetch(url)
            except TransportError as e:
                logging.warning("error downloading %s: %s", url, e)
                self._count("resources_failed")
                return ResourceOutcome(url, kind, TaskState.FAILED)
            if not result.ok:
                logging.warning("failed %s -> HTTP %s", url, result.status)
                self._count("resources_failed")
                return ResourceOutcome(url, kind, TaskState.FAILED)
            return self._materialize(url, kind, result)
        finally:
            self.claimed.settle(url)

    def _materialize(
        self, url: str, kind: ResourceKind, result: FetchResult
    ) -> ResourceOutcome:
        plain = self.local_path(url)
        local = plain
        data = result.body
        webp_from = None
        if kind is ResourceKind.STYLESHEET:
            data = self._process_stylesheet(url, plain, result)
        elif (
            self.settings.convert_to_webp
            and is_webp_eligible(kind)
            and is_webp_candidate(url)
        ):
            converted = transcode(data, self.settings.webp_quality)
            if converted.converted:
                data = converted.data
                local = translate_to_webp(plain, url)
                webp_from = plain
                self._count("images_converted")
            else:
                logging.info("keeping original image bytes for %s", url)

        try:
            write_file(self.output_root, local, data)
        except OSError as e:
            logging.warning("failed to write %s: %s", local, e)
            self._count("resources_failed")
            return ResourceOutcome(url, kind, TaskState.FAILED)
        self.ledger.record(url, local)
        self._count("resources_fetched")
        logging.info("downloaded asset: %s -> %s", url, local)
        return ResourceOutcome(url, kind, TaskState.DONE, local, webp_from)

    def _process_stylesheet(self, css_url: str, css_path: str, result: FetchResult) -> bytes:
        text, encoding = decode_text(result.body, charset_of(result))
        refs: List[ResourceReference] = []
        seen: Set[str] = set()
        for ref in extract_from_css(css_url, text):
            if ref.original_url in seen:
                continue
            seen.add(ref.original_url)
            if should_fetch(
                ref.kind, ref.original_url, self.target_host, self.settings.only_resources
            ):
                refs.append(ref)
        if not refs:
            return result.body
        outcomes = [self.fetch_resource(r, nested=True) for r in refs]
        targets = [o.target() for o in outcomes if o.local_path]
        if not targets:
            return result.body
        new_text = rewrite_document(
            text, css_path, css_url, targets, protected=self._protected(refs, targets)
        )
        return encode_text(new_text, encoding)


def mirror_site(
    base_url: str,
    output_dir: "Path | str",
    settings: Optional[Settings] = None,
    fetch: Optional[Fetcher] = None,
) -> MirrorStats:
    return SiteMirror(base_url, output_dir, settings, fetch).run()
