"""Lookup contracts and the per-session label cache."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

V = TypeVar("V")


@dataclass(frozen=True, slots=True)
class TermRecord:
    """A taxonomy term as returned by the term store."""

    id: str
    label: str
    parent_id: str | None = None


@dataclass(frozen=True, slots=True)
class TermLabel:
    label: str
    path: str


@dataclass(frozen=True, slots=True)
class PersonProfile:
    display_name: str = ""
    properties: dict[str, str] = field(default_factory=dict)


class TermLookup(Protocol):
    """Resolves a term id against the term store. May raise."""

    async def get_term(self, term_id: str) -> TermRecord | None: ...


class ProfileLookup(Protocol):
    """Resolves a claims principal against the profile service. May raise."""

    async def get_profile(self, claim: str) -> PersonProfile | None: ...


class LabelCache(Generic[V]):
    """Maps a key to one shared in-flight or resolved future.

    The future is stored before the lookup is awaited, so concurrent callers
    for the same key join the pending lookup instead of issuing another one.
    Resolved entries are kept for the lifetime of the cache.
    """

    def __init__(self) -> None:
        self._entries: dict[str, asyncio.Future[V]] = {}

    def get_or_create(self, key: str, factory: Callable[[], Awaitable[V]]) -> asyncio.Future[V]:
        entry = self._entries.get(key)
        if entry is not None:
            return entry
        entry = asyncio.ensure_future(factory())
        self._entries[key] = entry
        return entry

    def peek(self, key: str) -> V | None:
        """Return the resolved value for ``key`` without waiting."""
        entry = self._entries.get(key)
        if entry is None or not entry.done() or entry.cancelled():
            return None
        if entry.exception() is not None:
            return None
        return entry.result()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def cancel_pending(self) -> None:
        for key, entry in list(self._entries.items()):
            if not entry.done():
                entry.cancel()
                del self._entries[key]
