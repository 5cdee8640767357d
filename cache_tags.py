"""Tag-based caching for the question and job info read models.

A read function wraps its work in ``CacheTagRegistry.cached(key, compute)``.
While ``compute`` runs it calls ``register_dependency(tag)`` for every entity
the result depends on. Write functions call ``invalidate(*tags)`` after a
successful commit, which drops every cached result registered against any of
those tags so the next read recomputes it.

The registry is created once per process (see ``main.py``) and passed to the
read/write functions explicitly.
"""
from __future__ import annotations

import threading
from collections import OrderedDict
from contextvars import ContextVar
from typing import Callable, Hashable, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")
Tag = str

# Tags collected by the cached computation currently running in this context
_collected_tags: ContextVar[Optional[set]] = ContextVar("collected_cache_tags", default=None)


# --- Tag derivation --- #
def get_global_tag(kind: str) -> Tag:
    return f"global:{kind}"


def get_user_tag(kind: str, user_id) -> Tag:
    return f"user:{user_id}:{kind}"


def get_job_info_tag(kind: str, job_info_id: str) -> Tag:
    return f"jobInfo:{job_info_id}:{kind}"


def get_id_tag(kind: str, entity_id) -> Tag:
    return f"id:{entity_id}:{kind}"


# Questions
def get_question_global_tag() -> Tag:
    return get_global_tag("questions")


def get_question_job_info_tag(job_info_id: str) -> Tag:
    return get_job_info_tag("questions", job_info_id)


def get_question_id_tag(question_id: str) -> Tag:
    return get_id_tag("questions", question_id)


# Job infos
def get_job_info_global_tag() -> Tag:
    return get_global_tag("jobInfos")


def get_job_info_user_tag(user_id: int) -> Tag:
    return get_user_tag("jobInfos", user_id)


def get_job_info_id_tag(job_info_id: str) -> Tag:
    return get_id_tag("jobInfos", job_info_id)


class _Entry:
    __slots__ = ("value", "tags")

    def __init__(self, value, tags: frozenset):
        self.value = value
        self.tags = tags


class CacheTagRegistry:
    """In-process LRU cache whose entries are evicted by tag.

    Results are cached even when they are ``None`` so that "not found" reads
    are served from cache until one of their tags is invalidated.

    A computation that was already running when one of its tags got
    invalidated still returns its value to the caller, but the value is not
    stored. Reads that start after ``invalidate`` returns always recompute.
    """

    def __init__(self, max_entries: int = 1024, enabled: bool = True):
        self.max_entries = max_entries
        self.enabled = enabled
        self._lock = threading.RLock()
        self._entries: "OrderedDict[Hashable, _Entry]" = OrderedDict()
        self._keys_by_tag: dict[Tag, set] = {}
        # Logical clock bumped on every invalidation
        self._clock = 0
        self._invalidated_at: dict[Tag, int] = {}
        self._in_flight = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def cached(self, key: Hashable, compute: Callable[[], T]) -> T:
        """Return the cached value for ``key`` or run ``compute`` and cache it."""
        outer_tags = _collected_tags.get()

        with self._lock:
            entry = self._entries.get(key) if self.enabled else None
            if entry is not None:
                self._entries.move_to_end(key)
            else:
                started_at = self._clock
                self._in_flight += 1

        if entry is not None:
            logger.debug("Cache hit", cache_key=key)
            if outer_tags is not None:
                outer_tags.update(entry.tags)
            return entry.value

        logger.debug("Cache miss", cache_key=key)
        tags: set = set()
        token = _collected_tags.set(tags)
        try:
            value = compute()
        except BaseException:
            self._finish(key, None, None, started_at)
            raise
        finally:
            _collected_tags.reset(token)

        # Nested cached reads make the enclosing read depend on the same tags
        if outer_tags is not None:
            outer_tags.update(tags)

        self._finish(key, value, frozenset(tags), started_at)
        return value

    def register_dependency(self, tag: Tag) -> None:
        """Mark the cached computation currently running as dependent on ``tag``."""
        tags = _collected_tags.get()
        if tags is None:
            raise RuntimeError("register_dependency() called outside of a cached computation")
        tags.add(tag)

    def invalidate(self, *tags: Tag) -> int:
        """Drop every cached entry registered against any of ``tags``.

        Returns the number of entries dropped.
        """
        dropped = 0
        with self._lock:
            self._clock += 1
            for tag in tags:
                if self._in_flight:
                    self._invalidated_at[tag] = self._clock
                for key in self._keys_by_tag.pop(tag, set()):
                    if self._drop(key):
                        dropped += 1
        logger.info("Cache tags invalidated", tags=list(tags), dropped=dropped)
        return dropped

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._keys_by_tag.clear()
            self._invalidated_at.clear()

    def _finish(self, key: Hashable, value, tags: Optional[frozenset], started_at: int) -> None:
        with self._lock:
            self._in_flight -= 1
            try:
                if tags is None or not self.enabled:
                    return
                if any(self._invalidated_at.get(tag, -1) > started_at for tag in tags):
                    logger.debug("Not caching result invalidated mid-computation", cache_key=key)
                    return
                self._drop(key)
                self._entries[key] = _Entry(value, tags)
                for tag in tags:
                    self._keys_by_tag.setdefault(tag, set()).add(key)
                while len(self._entries) > self.max_entries:
                    self._drop(next(iter(self._entries)))
            finally:
                if not self._in_flight:
                    self._invalidated_at.clear()

    def _drop(self, key: Hashable) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        for tag in entry.tags:
            keys = self._keys_by_tag.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._keys_by_tag[tag]
        return True


def revalidate_question_cache(registry: CacheTagRegistry, *, id: str, job_info_id: str) -> None:
    registry.invalidate(
        get_question_global_tag(),
        get_question_job_info_tag(job_info_id),
        get_question_id_tag(id),
    )


def revalidate_job_info_cache(registry: CacheTagRegistry, *, id: str, user_id: int) -> None:
    registry.invalidate(
        get_job_info_global_tag(),
        get_job_info_user_tag(user_id),
        get_job_info_id_tag(id),
    )
