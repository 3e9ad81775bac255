"""Collaborator contracts and in-memory adapters."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal, Protocol

from search_session.query.formatters import (
    FilterValueFormatter,
    FilterValueFormatterSet,
    extract_guid,
    parse_date_range_token,
    parse_range_token,
    strip_string_wrapper,
)
from search_session.registry import Registry
from search_session.store.scheduling import CancellationToken
from search_session.types import (
    ActiveFilter,
    ClickedItem,
    Refiner,
    RefinerValue,
    SavedSearch,
    SearchCollection,
    SearchHistoryEntry,
    SearchQuery,
    SearchResponse,
    SearchResult,
    SearchScope,
    Suggestion,
)

if TYPE_CHECKING:
    from search_session.promotions import PromotionRule

logger = logging.getLogger(__name__)


class SearchDataProvider(Protocol):
    """Executes a compiled query against a search backend."""

    id: str
    display_name: str
    supports_refiners: bool
    supports_collapsing: bool
    supports_sorting: bool

    async def execute(self, query: SearchQuery, token: CancellationToken) -> SearchResponse:
        """Run ``query``; implementations should stop early once ``token`` is cancelled."""


@dataclass(frozen=True, slots=True)
class SearchContext:
    session_id: str
    site_url: str
    scope: SearchScope


class SuggestionProvider(Protocol):
    id: str
    display_name: str
    priority: int
    max_results: int

    async def get_suggestions(self, query_text: str, context: SearchContext) -> list[Suggestion]: ...

    def is_enabled(self, context: SearchContext) -> bool: ...


class ActionProvider(Protocol):
    id: str
    label: str
    position: Literal["toolbar", "contextMenu", "both"]
    is_bulk_enabled: bool

    def is_applicable(self, item: SearchResult) -> bool: ...

    async def execute(self, items: list[SearchResult], context: SearchContext) -> None: ...


@dataclass(frozen=True, slots=True)
class LayoutDefinition:
    id: str
    display_name: str
    icon_name: str = ""
    supports_paging: Literal["numbered", "infinite", "both"] = "numbered"
    supports_bulk_select: bool = False


@dataclass(frozen=True, slots=True)
class FilterTypeDefinition:
    """Binds a filter type id to the formatter that encodes its values."""

    id: str
    display_name: str
    formatter: FilterValueFormatter | None = None


_BUILTIN_FILTER_TYPES = {
    "checkbox": "Checkbox",
    "tagbox": "Tag box",
    "taxonomy": "Taxonomy",
    "people": "People",
    "slider": "Slider",
    "daterange": "Date range",
    "toggle": "Toggle",
}


def register_builtin_filter_types(
    registry: Registry[FilterTypeDefinition],
    formatters: FilterValueFormatterSet | None = None,
) -> FilterValueFormatterSet:
    """Register a definition for every built-in filter type id."""
    formatters = formatters or FilterValueFormatterSet(registry)
    for type_id, display_name in _BUILTIN_FILTER_TYPES.items():
        registry.register(
            FilterTypeDefinition(
                id=type_id,
                display_name=display_name,
                formatter=formatters.get(type_id),
            )
        )
    return formatters


class SearchManagerService(Protocol):
    """Persistence for saved searches, history, collections and promotion rules."""

    async def initialize(self) -> None: ...

    async def load_saved_searches(self) -> list[SavedSearch]: ...

    async def save_search(
        self, title: str, query_text: str, search_state: str, search_url: str = "", category: str = ""
    ) -> SavedSearch: ...

    async def delete_saved_search(self, search_id: int) -> None: ...

    async def load_history(self) -> list[SearchHistoryEntry]: ...

    async def log_search(
        self, query_text: str, vertical: str, scope: str, search_state: str, result_count: int
    ) -> int:
        """Record a search and return its history id (0 when not recorded)."""

    async def log_clicked_item(self, history_id: int, url: str, title: str, position: int) -> None: ...

    async def clear_history(self) -> None: ...

    async def load_collections(self) -> list[SearchCollection]: ...

    async def load_promotion_rules(self) -> list[PromotionRule]: ...


class AudienceResolver(Protocol):
    """Resolves the current user's group ids for audience targeting."""

    async def get_user_groups(self) -> list[str]: ...


def compute_state_hash(search_state: str) -> str:
    return hashlib.sha256(search_state.encode("utf-8")).hexdigest()


def _property_values(result: SearchResult, name: str) -> list[str]:
    raw = result.properties.get(name)
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        return [str(item) for item in raw]
    return [str(raw)]


def _as_utc(moment: datetime) -> datetime:
    return moment.replace(tzinfo=timezone.utc) if moment.tzinfo is None else moment


def _matches_token(result: SearchResult, active: ActiveFilter) -> bool:
    values = _property_values(result, active.filter_name)
    token = strip_string_wrapper(active.value)

    dates = parse_date_range_token(token)
    if dates is not None:
        start, end = (_as_utc(moment) for moment in dates)
        for value in values:
            try:
                moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                continue
            if start <= _as_utc(moment) <= end:
                return True
        return False

    numeric = parse_range_token(token)
    if numeric is not None:
        for value in values:
            try:
                number = float(value)
            except ValueError:
                continue
            if (numeric.min is None or number >= numeric.min) and (
                numeric.max is None or number <= numeric.max
            ):
                return True
        return False

    if token.startswith("GP0|#"):
        guid = extract_guid(token)
        return guid is not None and any(guid.lower() in value.lower() for value in values)

    return token in values


def _matches_filters(result: SearchResult, filters: Iterable[ActiveFilter]) -> bool:
    groups: dict[str, list[ActiveFilter]] = {}
    for active in filters:
        groups.setdefault(active.filter_name, []).append(active)
    for group in groups.values():
        matches = [_matches_token(result, active) for active in group]
        combine = all if group[0].operator == "AND" else any
        if not combine(matches):
            return False
    return True


def _matches_text(result: SearchResult, query_text: str) -> bool:
    terms = [term.lower() for term in query_text.split() if term != "*"]
    if not terms:
        return True
    haystack = " ".join(
        [result.title, result.summary, *(str(value) for value in result.properties.values())]
    ).lower()
    return all(term in haystack for term in terms)


class InMemorySearchProvider:
    """Deterministic provider used for tests and local prototyping.

    Matches every whitespace-separated term of ``query_text`` as a substring
    of title, summary or property values, applies the active filters, and
    computes refiner buckets from the matched documents before paging.
    """

    def __init__(
        self,
        documents: Iterable[SearchResult] = (),
        *,
        provider_id: str = "in-memory",
        display_name: str = "In-memory search",
        promoted_results: Iterable[Any] = (),
        delay_seconds: float = 0.0,
        supports_refiners: bool = True,
    ) -> None:
        self.id = provider_id
        self.display_name = display_name
        self.supports_refiners = supports_refiners
        self.supports_collapsing = False
        self.supports_sorting = True
        self._documents = list(documents)
        self._promoted = tuple(promoted_results)
        self._delay_seconds = delay_seconds
        self.executed: list[SearchQuery] = []

    def add(self, document: SearchResult) -> None:
        self._documents.append(document)

    def __len__(self) -> int:
        return len(self._documents)

    async def execute(self, query: SearchQuery, token: CancellationToken) -> SearchResponse:
        self.executed.append(query)
        if self._delay_seconds:
            await asyncio.sleep(self._delay_seconds)
        if token.cancelled:
            return SearchResponse()

        matched = [
            doc
            for doc in self._documents
            if _matches_text(doc, query.query_text) and _matches_filters(doc, query.filters)
        ]

        for entry in reversed(query.sort_list):
            matched.sort(
                key=lambda doc, prop=entry.property: str(doc.properties.get(prop, "")),
                reverse=entry.direction == 1,
            )

        refiners = self._build_refiners(matched, query) if self.supports_refiners else ()
        start = (max(query.page, 1) - 1) * query.page_size
        items = tuple(matched[start : start + query.page_size])
        return SearchResponse(
            items=items,
            total_count=len(matched),
            refiners=refiners,
            promoted_results=self._promoted,
        )

    def _build_refiners(self, matched: list[SearchResult], query: SearchQuery) -> tuple[Refiner, ...]:
        selected = {(item.filter_name, item.value) for item in query.filters}
        refiners: list[Refiner] = []
        for name in query.refiners:
            counts = Counter(value for doc in matched for value in _property_values(doc, name))
            refiners.append(
                Refiner(
                    filter_name=name,
                    values=tuple(
                        RefinerValue(
                            name=value,
                            value=value,
                            count=count,
                            is_selected=(name, value) in selected,
                        )
                        for value, count in counts.most_common()
                    ),
                )
            )
        return tuple(refiners)


class InMemorySearchManager:
    """Process-local persistence for saved searches, history and rules."""

    def __init__(
        self,
        *,
        promotion_rules: Iterable[PromotionRule] = (),
        collections: Iterable[SearchCollection] = (),
    ) -> None:
        self.initialized = False
        self._saved: list[SavedSearch] = []
        self._history: dict[int, SearchHistoryEntry] = {}
        self._collections = list(collections)
        self._rules = list(promotion_rules)
        self._next_id = 1

    def _allocate_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    async def initialize(self) -> None:
        self.initialized = True

    async def load_saved_searches(self) -> list[SavedSearch]:
        return list(self._saved)

    async def save_search(
        self, title: str, query_text: str, search_state: str, search_url: str = "", category: str = ""
    ) -> SavedSearch:
        saved = SavedSearch(
            id=self._allocate_id(),
            title=title,
            query_text=query_text,
            search_state=search_state,
            search_url=search_url,
            category=category,
        )
        self._saved.insert(0, saved)
        return saved

    async def delete_saved_search(self, search_id: int) -> None:
        self._saved = [item for item in self._saved if item.id != search_id]

    async def load_history(self) -> list[SearchHistoryEntry]:
        return sorted(self._history.values(), key=lambda entry: entry.search_timestamp, reverse=True)

    async def log_search(
        self, query_text: str, vertical: str, scope: str, search_state: str, result_count: int
    ) -> int:
        query_hash = compute_state_hash(search_state)
        now = datetime.now(timezone.utc)
        for entry in self._history.values():
            if entry.query_hash == query_hash:
                self._history[entry.id] = replace(entry, result_count=result_count, search_timestamp=now)
                return entry.id

        entry = SearchHistoryEntry(
            id=self._allocate_id(),
            query_hash=query_hash,
            query_text=query_text[:255],
            vertical=vertical,
            scope=scope,
            search_state=search_state,
            result_count=result_count,
            search_timestamp=now,
        )
        self._history[entry.id] = entry
        return entry.id

    async def log_clicked_item(self, history_id: int, url: str, title: str, position: int) -> None:
        entry = self._history.get(history_id)
        if entry is None:
            logger.debug("Ignoring click for unknown history entry %s", history_id)
            return
        click = ClickedItem(url=url, title=title, position=position, timestamp=datetime.now(timezone.utc))
        self._history[history_id] = replace(entry, clicked_items=(*entry.clicked_items, click))

    async def clear_history(self) -> None:
        self._history.clear()

    async def load_collections(self) -> list[SearchCollection]:
        return list(self._collections)

    async def load_promotion_rules(self) -> list[PromotionRule]:
        return list(self._rules)


@dataclass(slots=True)
class StaticAudienceResolver:
    """Returns a fixed group list, or raises ``error`` when one is set."""

    groups: list[str] = field(default_factory=list)
    error: Exception | None = None

    async def get_user_groups(self) -> list[str]:
        if self.error is not None:
            raise self.error
        return list(self.groups)
