"""Immutable session state: six slices composed into one snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any

from search_session.config import FilterConfig, StoreConfig
from search_session.promotions import is_in_audience
from search_session.types import (
    DEFAULT_SCOPE,
    ActiveFilter,
    PromotedResultItem,
    Refiner,
    SavedSearch,
    SearchCollection,
    SearchHistoryEntry,
    SearchResult,
    SearchScope,
    SortField,
    Suggestion,
)


@dataclass(frozen=True, slots=True)
class VerticalDefinition:
    """A result tab. Overrides apply while the vertical is active."""

    key: str
    label: str
    icon_name: str = ""
    query_template: str | None = None
    result_source_id: str | None = None
    data_provider_id: str | None = None
    filter_config: tuple[FilterConfig, ...] | None = None
    audience_groups: tuple[str, ...] = ()
    sort_order: int = 0


@dataclass(frozen=True, slots=True)
class QuerySlice:
    query_text: str = ""
    query_template: str = "{searchTerms}"
    scope: SearchScope = DEFAULT_SCOPE
    suggestions: tuple[Suggestion, ...] = ()
    is_searching: bool = False


@dataclass(frozen=True, slots=True)
class FilterSlice:
    active_filters: tuple[ActiveFilter, ...] = ()
    available_refiners: tuple[Refiner, ...] = ()
    filter_config: tuple[FilterConfig, ...] = ()
    is_refining: bool = False


@dataclass(frozen=True, slots=True)
class ResultSlice:
    items: tuple[SearchResult, ...] = ()
    total_count: int = 0
    current_page: int = 1
    page_size: int = 25
    sort: SortField | None = None
    is_loading: bool = False
    error: str | None = None
    promoted_results: tuple[PromotedResultItem, ...] = ()
    query_suggestion: str | None = None


@dataclass(frozen=True, slots=True)
class VerticalSlice:
    current_vertical_key: str = "all"
    verticals: tuple[VerticalDefinition, ...] = ()
    vertical_counts: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class UiSlice:
    active_layout_key: str = "list"
    is_search_manager_open: bool = False
    preview_item: SearchResult | None = None
    selected_keys: tuple[str, ...] = ()
    current_user_groups: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class UserSlice:
    saved_searches: tuple[SavedSearch, ...] = ()
    search_history: tuple[SearchHistoryEntry, ...] = ()
    collections: tuple[SearchCollection, ...] = ()


_SLICE_NAMES = ("query", "filters", "results", "vertical", "ui", "user")


@dataclass(frozen=True, slots=True)
class SessionState:
    """One complete snapshot. Every slice is always present."""

    query: QuerySlice = field(default_factory=QuerySlice)
    filters: FilterSlice = field(default_factory=FilterSlice)
    results: ResultSlice = field(default_factory=ResultSlice)
    vertical: VerticalSlice = field(default_factory=VerticalSlice)
    ui: UiSlice = field(default_factory=UiSlice)
    user: UserSlice = field(default_factory=UserSlice)

    @classmethod
    def initial(cls, config: StoreConfig | None = None) -> "SessionState":
        config = config or StoreConfig()
        return cls(
            results=ResultSlice(page_size=config.page_size),
            vertical=VerticalSlice(current_vertical_key=config.default_vertical),
            ui=UiSlice(active_layout_key=config.default_layout),
        )

    def with_fields(self, **changes: Any) -> "SessionState":
        """Apply flat field changes across slices in one new snapshot.

        Raises ``KeyError`` for a name that no slice owns.
        """
        grouped: dict[str, dict[str, Any]] = {}
        for name, value in changes.items():
            grouped.setdefault(_FIELD_OWNERS[name], {})[name] = value
        updated = {
            slice_name: replace(getattr(self, slice_name), **slice_changes)
            for slice_name, slice_changes in grouped.items()
        }
        return replace(self, **updated)

    @property
    def current_vertical(self) -> VerticalDefinition | None:
        key = self.vertical.current_vertical_key
        for definition in self.vertical.verticals:
            if definition.key == key:
                return definition
        return None

    @property
    def visible_verticals(self) -> tuple[VerticalDefinition, ...]:
        """Verticals whose audience includes the current user; untargeted ones always show."""
        groups = self.ui.current_user_groups
        return tuple(v for v in self.vertical.verticals if is_in_audience(v.audience_groups, groups))

    @property
    def effective_filter_config(self) -> tuple[FilterConfig, ...]:
        vertical = self.current_vertical
        if vertical is not None and vertical.filter_config:
            return vertical.filter_config
        return self.filters.filter_config


def _build_field_owners() -> dict[str, str]:
    owners: dict[str, str] = {}
    for slice_name, slice_type in zip(
        _SLICE_NAMES,
        (QuerySlice, FilterSlice, ResultSlice, VerticalSlice, UiSlice, UserSlice),
        strict=True,
    ):
        for slice_field in fields(slice_type):
            owners[slice_field.name] = slice_name
    return owners


_FIELD_OWNERS = _build_field_owners()
