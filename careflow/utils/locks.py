"""Striped per-key locks"""
import threading
import zlib
from contextlib import contextmanager
from typing import Iterator, List


class KeyedLocks:
    """
    Fixed pool of locks addressed by key.

    Two operations on the same key always contend on the same lock, while
    unrelated keys are spread across stripes so they rarely wait on each other.
    """

    def __init__(self, stripes: int = 64):
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def _index(self, key: str) -> int:
        # crc32 is stable across processes, unlike hash() on str
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    def lock_for(self, key: str) -> threading.Lock:
        return self._locks[self._index(key)]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.lock_for(key)
        with lock:
            yield
