"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

FilterOperator = Literal["AND", "OR"]
SortDirection = Literal["Ascending", "Descending"]


@dataclass(frozen=True, slots=True)
class ActiveFilter:
    """A selected refinement. `value` is always the backend token."""

    filter_name: str
    value: str
    operator: FilterOperator = "OR"


@dataclass(frozen=True, slots=True)
class RefinerValue:
    name: str
    value: str
    count: int
    is_selected: bool = False


@dataclass(frozen=True, slots=True)
class Refiner:
    """Refiner bucket returned by the backend for one managed property."""

    filter_name: str
    values: tuple[RefinerValue, ...] = ()


@dataclass(frozen=True, slots=True)
class SortField:
    property: str
    direction: SortDirection = "Descending"


@dataclass(frozen=True, slots=True)
class SortEntry:
    """Backend sort descriptor; direction 0 is ascending, 1 descending."""

    property: str
    direction: int


@dataclass(frozen=True, slots=True)
class SearchScope:
    id: str
    label: str
    kql_path: str | None = None
    result_source_id: str | None = None


DEFAULT_SCOPE = SearchScope(id="all", label="All SharePoint")


@dataclass(frozen=True, slots=True)
class Suggestion:
    display_text: str
    group_name: str
    icon_name: str | None = None


@dataclass(frozen=True, slots=True)
class PersonaInfo:
    display_text: str
    email: str
    image_url: str | None = None


@dataclass(frozen=True, slots=True)
class SearchResult:
    """Normalized search result produced by a data provider."""

    key: str
    title: str
    url: str
    summary: str = ""
    author: PersonaInfo | None = None
    created: str = ""
    modified: str = ""
    file_type: str = ""
    file_size: int = 0
    site_name: str = ""
    site_url: str = ""
    thumbnail_url: str = ""
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PromotedResultItem:
    title: str
    url: str
    description: str | None = None
    icon_url: str | None = None


@dataclass(frozen=True, slots=True)
class SearchQuery:
    """Immutable request object built once per search execution."""

    query_text: str
    query_template: str
    compiled_query: str
    scope: SearchScope
    filters: tuple[ActiveFilter, ...]
    refinement_filters: tuple[str, ...]
    sort: SortField | None
    sort_list: tuple[SortEntry, ...]
    page: int
    page_size: int
    selected_properties: tuple[str, ...]
    refiners: tuple[str, ...]
    collapse_specification: str | None = None
    result_source_id: str | None = None
    trim_duplicates: bool = True


@dataclass(frozen=True, slots=True)
class SearchResponse:
    items: tuple[SearchResult, ...] = ()
    total_count: int = 0
    refiners: tuple[Refiner, ...] = ()
    promoted_results: tuple[PromotedResultItem, ...] = ()
    query_suggestion: str | None = None


@dataclass(frozen=True, slots=True)
class ClickedItem:
    url: str
    title: str
    position: int
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class SavedSearch:
    id: int
    title: str
    query_text: str
    search_state: str
    search_url: str = ""
    entry_type: Literal["SavedSearch", "SharedSearch"] = "SavedSearch"
    category: str = ""
    result_count: int = 0


@dataclass(frozen=True, slots=True)
class SearchHistoryEntry:
    id: int
    query_hash: str
    query_text: str
    vertical: str
    scope: str
    search_state: str
    result_count: int
    search_timestamp: datetime
    clicked_items: tuple[ClickedItem, ...] = ()


@dataclass(frozen=True, slots=True)
class CollectionItem:
    id: int
    url: str
    title: str
    sort_order: int = 0
    tags: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class SearchCollection:
    id: int
    collection_name: str
    items: tuple[CollectionItem, ...] = ()
    tags: tuple[str, ...] = ()
