from __future__ import annotations

import threading
from typing import Iterable

from deepsearch.tools.web_utils import normalize_url


class GlobalSourceIndex:
    """Run-scoped URL -> citation number map shared by extraction and synthesis.

    Numbers start at 1 and only grow. A URL keeps its first number for the whole
    run; assignment is a single-writer critical section.
    """

    def __init__(self) -> None:
        self._by_url: dict[str, int] = {}
        self._urls: list[str] = []
        self._lock = threading.Lock()

    def assign(self, url: str) -> int:
        key = normalize_url(url)
        with self._lock:
            existing = self._by_url.get(key)
            if existing is not None:
                return existing
            self._urls.append(url)
            index = len(self._urls)
            self._by_url[key] = index
            return index

    def assign_many(self, urls: Iterable[str]) -> list[int]:
        return [self.assign(url) for url in urls]

    def get(self, url: str) -> int | None:
        with self._lock:
            return self._by_url.get(normalize_url(url))

    def url_for(self, index: int) -> str | None:
        with self._lock:
            if 1 <= index <= len(self._urls):
                return self._urls[index - 1]
            return None

    def snapshot(self) -> dict[str, int]:
        """URL (as first seen) -> index, in assignment order."""
        with self._lock:
            return {url: i + 1 for i, url in enumerate(self._urls)}

    def __contains__(self, url: object) -> bool:
        return isinstance(url, str) and self.get(url) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._urls)
