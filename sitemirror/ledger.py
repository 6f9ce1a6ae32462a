import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, Iterator, Optional

from .errors import PersistenceError
from .storage import atomic_write_json

LEDGER_FILENAME = ".sitemirror-ledger.json"


def utc_now() -> str:
    # RFC3339 UTC timestamp without microseconds
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


@dataclass(frozen=True)
class LedgerEntry:
    remote_url: str
    local_path: str
    written_at: str


class DownloadLedger:
    """Persisted ``url -> local path`` map of every materialized resource.

    This is the resumable cache: a URL present here is never fetched again,
    in this run or the next. HTML pages are not recorded, only the resources
    they pull in and non-HTML responses reached as links. All mutation goes
    through one lock so worker threads can record concurrently.
    """

    def __init__(self, entries: Optional[Dict[str, LedgerEntry]] = None):
        self._entries: Dict[str, LedgerEntry] = dict(entries or {})
        self._lock = Lock()

    @classmethod
    def load(cls, path: Path) -> "DownloadLedger":
        if not path.exists():
            return cls()
        try:
            data = _read_store(path)
        except PersistenceError as e:
            logging.warning("ignoring unreadable ledger %s: %s", path, e)
            return cls()
        stamp = data.get("lastUpdated") or utc_now()
        entries = {
            url: LedgerEntry(url, local, str(stamp))
            for url, local in data["downloads"].items()
            if isinstance(url, str) and isinstance(local, str) and local
        }
        logging.info("loaded ledger %s (%d entries)", path, len(entries))
        return cls(entries)

    def save(self, path: Path) -> None:
        with self._lock:
            downloads = {u: e.local_path for u, e in sorted(self._entries.items())}
        data = {"downloads": downloads, "lastUpdated": utc_now()}
        try:
            atomic_write_json(path, data)
            logging.info("ledger saved: %s (%d entries)", path, len(downloads))
        except PersistenceError as e:
            logging.warning("failed to save ledger: %s", e)

    def has(self, url: str) -> bool:
        with self._lock:
            return url in self._entries

    def get(self, url: str) -> Optional[str]:
        with self._lock:
            e = self._entries.get(url)
        return None if e is None else e.local_path

    def record(self, url: str, local_path: str) -> LedgerEntry:
        with self._lock:
            existing = self._entries.get(url)
            # first write wins; a repeat only refreshes the timestamp
            path = existing.local_path if existing else local_path
            e = LedgerEntry(url, path, utc_now())
            self._entries[url] = e
            return e

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[LedgerEntry]:
        with self._lock:
            entries = list(self._entries.values())
        return iter(entries)


def _read_store(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, ValueError) as e:
        raise PersistenceError(str(e)) from e
    if not isinstance(data, dict) or not isinstance(data.get("downloads"), dict):
        raise PersistenceError("missing 'downloads' map")
    return data
