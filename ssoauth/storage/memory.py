from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from redis.exceptions import ResponseError, WatchError

from ssoauth.logging import get_logger

_Value = Union[str, Set[str]]


class MemoryKV:
    """In-process stand-in for the ``redis.asyncio`` client.

    Covers the primitives the session registry relies on (string get/set
    with expiry, INCR, sets, EXPIRE and MULTI/EXEC pipelines) with the same
    call signatures and ``decode_responses=True`` return types. No method
    awaits internally, so every call and every pipeline ``execute`` runs to
    completion without interleaving with other tasks on the loop.

    Every write bumps a per-key revision so pipelines can honour WATCH.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock or time.monotonic
        self._data: Dict[str, _Value] = {}
        self._expires: Dict[str, float] = {}
        self._revisions: Dict[str, int] = {}

    def _purge(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._expires.pop(key, None)
            self._touch(key)

    def _touch(self, key: str) -> None:
        self._revisions[key] = self._revisions.get(key, 0) + 1

    def _revision(self, key: str) -> int:
        self._purge(key)
        return self._revisions.get(key, 0)

    def _lookup(self, key: str) -> Optional[_Value]:
        self._purge(key)
        return self._data.get(key)

    def _string(self, key: str) -> Optional[str]:
        value = self._lookup(key)
        if value is not None and not isinstance(value, str):
            raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    def _set_members(self, key: str, create: bool = False) -> Optional[Set[str]]:
        value = self._lookup(key)
        if value is None:
            if not create:
                return None
            value = set()
            self._data[key] = value
            self._touch(key)
        if not isinstance(value, set):
            raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    # String commands

    async def get(self, key: str) -> Optional[str]:
        return self._string(key)

    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        self._data[key] = str(value)
        if ex is not None:
            self._expires[key] = self._clock() + int(ex)
        else:
            self._expires.pop(key, None)
        self._touch(key)
        return True

    async def incr(self, key: str) -> int:
        current = self._string(key)
        try:
            value = int(current or 0) + 1
        except ValueError:
            raise ResponseError("value is not an integer or out of range") from None
        self._data[key] = str(value)
        self._touch(key)
        return value

    # Key commands

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._lookup(key) is not None:
                removed += 1
                self._touch(key)
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._lookup(key) is not None)

    async def expire(self, key: str, seconds: int) -> bool:
        if self._lookup(key) is None:
            return False
        self._expires[key] = self._clock() + int(seconds)
        self._touch(key)
        return True

    async def ttl(self, key: str) -> int:
        if self._lookup(key) is None:
            return -2
        deadline = self._expires.get(key)
        if deadline is None:
            return -1
        return max(0, int(round(deadline - self._clock())))

    # Set commands

    async def sadd(self, key: str, *members: str) -> int:
        current = self._set_members(key, create=True)
        before = len(current)
        current.update(str(m) for m in members)
        added = len(current) - before
        if added:
            self._touch(key)
        return added

    async def srem(self, key: str, *members: str) -> int:
        current = self._set_members(key)
        if current is None:
            return 0
        before = len(current)
        current.difference_update(str(m) for m in members)
        removed = before - len(current)
        if removed:
            self._touch(key)
        if not current:
            # Redis drops empty sets
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return removed

    async def smembers(self, key: str) -> Set[str]:
        current = self._set_members(key)
        return set(current) if current else set()

    # Connection

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self._data.clear()
        self._expires.clear()
        self._revisions.clear()

    def pipeline(self, transaction: bool = True) -> "_MemoryPipeline":
        return _MemoryPipeline(self)


class _MemoryPipeline:
    """Queued commands executed back-to-back, mirroring MULTI/EXEC.

    After ``watch`` the pipeline runs commands immediately until ``multi``
    starts buffering; ``execute`` then raises ``WatchError`` if any watched
    key was written in between, as redis-py does.
    """

    def __init__(self, kv: MemoryKV) -> None:
        self._kv = kv
        self._queue: List[Tuple[str, tuple, dict]] = []
        self._watched: Dict[str, int] = {}
        self._immediate = False

    def __getattr__(self, name: str):
        if name.startswith("_") or not hasattr(self._kv, name):
            raise AttributeError(name)
        if self._immediate:
            return getattr(self._kv, name)

        def _queue(*args, **kwargs):
            self._queue.append((name, args, kwargs))
            return self

        return _queue

    async def watch(self, *keys: str) -> bool:
        for key in keys:
            self._watched[key] = self._kv._revision(key)
        self._immediate = True
        return True

    def multi(self) -> None:
        self._immediate = False

    async def reset(self) -> None:
        self._queue.clear()
        self._watched.clear()
        self._immediate = False

    async def execute(self) -> List[Any]:
        queued, self._queue = self._queue, []
        watched, self._watched = self._watched, {}
        self._immediate = False
        for key, seen in watched.items():
            if self._kv._revision(key) != seen:
                raise WatchError("Watched variable changed.")
        results = []
        for name, args, kwargs in queued:
            results.append(await getattr(self._kv, name)(*args, **kwargs))
        return results

    async def __aenter__(self) -> "_MemoryPipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.reset()
