import time
from io import BytesIO
from threading import Lock
from typing import Dict, List, Union

import pytest
from PIL import Image

from sitemirror.errors import TransportError
from sitemirror.fetch import FetchResult
from sitemirror.settings import Settings


class FakeFetcher:
    """Serves canned responses and remembers every URL asked for."""

    def __init__(self):
        self.responses: Dict[str, Union[FetchResult, Exception]] = {}
        self.calls: List[str] = []
        self.delays: Dict[str, float] = {}
        self._lock = Lock()

    def add(self, url, body, content_type="text/html", status=200):
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.responses[url] = FetchResult(
            url=url, status=status, headers={"Content-Type": content_type}, body=body
        )

    def fail(self, url):
        self.responses[url] = TransportError(url, "connection refused")

    def count(self, url):
        return self.calls.count(url)

    def __call__(self, url):
        with self._lock:
            self.calls.append(url)
        if url in self.delays:
            time.sleep(self.delays[url])
        r = self.responses.get(url)
        if r is None:
            return FetchResult(url=url, status=404)
        if isinstance(r, Exception):
            raise r
        return r


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def settings():
    return Settings(ignore_robots=True, max_concurrency=4)


@pytest.fixture
def make_image():
    def make(mode="RGB", fmt="PNG", size=(8, 8)):
        color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
        img = Image.new(mode, size, color)
        out = BytesIO()
        img.save(out, format=fmt)
        return out.getvalue()

    return make
