"""The per-session state container and its actions."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Literal

from search_session.config import FilterConfig, StoreConfig
from search_session.query.formatters import FilterValueFormatterSet
from search_session.registry import RegistryContainer
from search_session.store.scheduling import CancellationToken
from search_session.store.state import SessionState, VerticalDefinition
from search_session.types import (
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

logger = logging.getLogger(__name__)

Listener = Callable[[SessionState, SessionState], None]
StoreStatus = Literal["uninitialized", "active", "disposed"]


def _is_range_token(value: str) -> bool:
    return value.startswith("range(") or "range(datetime" in value


class SearchStore:
    """Single source of truth for one search session.

    Every action produces one complete new ``SessionState`` and notifies
    listeners with ``(state, previous)`` in registration order. After
    ``dispose()`` every mutation is ignored.
    """

    def __init__(
        self,
        session_id: str = "default",
        *,
        config: StoreConfig | None = None,
        registries: RegistryContainer | None = None,
        formatters: FilterValueFormatterSet | None = None,
    ) -> None:
        self.session_id = session_id
        self.config = config or StoreConfig()
        self.registries = registries or RegistryContainer()
        self.formatters = formatters or FilterValueFormatterSet(self.registries.filter_types)
        self._state = SessionState.initial(self.config)
        self._listeners: list[Listener] = []
        self._status: StoreStatus = "uninitialized"
        self._search_token: CancellationToken | None = None
        self._on_dispose: list[Callable[[], None]] = []

    @property
    def state(self) -> SessionState:
        return self._state

    def get_state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> StoreStatus:
        return self._status

    @property
    def is_disposed(self) -> bool:
        return self._status == "disposed"

    def activate(self) -> None:
        if self._status == "uninitialized":
            self._status = "active"

    def add_dispose_callback(self, callback: Callable[[], None]) -> None:
        self._on_dispose.append(callback)

    def dispose(self) -> None:
        if self._status == "disposed":
            return
        self._status = "disposed"
        if self._search_token is not None:
            self._search_token.cancel()
            self._search_token = None
        callbacks, self._on_dispose = self._on_dispose, []
        for callback in callbacks:
            callback()
        self.formatters.close()
        self._listeners.clear()
        logger.debug("Disposed search session %s", self.session_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def set_state(self, **fields: Any) -> None:
        """Apply several flat fields as a single transition."""
        if not fields:
            return
        self._commit(self._state.with_fields(**fields))

    def _commit(self, new_state: SessionState) -> None:
        if self._status == "disposed":
            logger.debug("Ignoring mutation on disposed session %s", self.session_id)
            return
        previous = self._state
        if new_state is previous:
            return
        self._state = new_state
        for listener in list(self._listeners):
            listener(new_state, previous)

    def reset(self) -> None:
        self._commit(SessionState.initial(self.config))

    def set_query_text(self, text: str) -> None:
        self.set_state(query_text=text, current_page=1)

    def set_query_template(self, template: str) -> None:
        self.set_state(query_template=template)

    def set_scope(self, scope: SearchScope) -> None:
        self.set_state(scope=scope, current_page=1)

    def set_suggestions(self, suggestions: Iterable[Suggestion]) -> None:
        self.set_state(suggestions=tuple(suggestions))

    def begin_search(self) -> CancellationToken:
        """Cancel the in-flight search, if any, and return a fresh token."""
        if self._search_token is not None:
            self._search_token.cancel()
        token = CancellationToken()
        if self._status == "disposed":
            token.cancel()
            return token
        self._search_token = token
        self.set_state(is_searching=True)
        return token

    def end_search(self, token: CancellationToken) -> None:
        """Mark ``token`` complete. It stays current so later work can still be cancelled."""
        if token is self._search_token:
            self.set_state(is_searching=False)

    def cancel_search(self) -> None:
        if self._search_token is not None:
            self._search_token.cancel()
            self._search_token = None
        self.set_state(is_searching=False)

    def set_refiner(self, active_filter: ActiveFilter) -> None:
        """Toggle a filter value.

        Range tokens are exclusive per property: selecting a different range
        replaces the current one, selecting the same range removes it.
        """

        current = list(self._state.filters.active_filters)
        if _is_range_token(active_filter.value):
            index = next(
                (
                    i
                    for i, item in enumerate(current)
                    if item.filter_name == active_filter.filter_name and _is_range_token(item.value)
                ),
                None,
            )
            if index is None:
                current.append(active_filter)
            elif current[index].value == active_filter.value:
                del current[index]
            else:
                current[index] = active_filter
        else:
            index = next(
                (
                    i
                    for i, item in enumerate(current)
                    if item.filter_name == active_filter.filter_name and item.value == active_filter.value
                ),
                None,
            )
            if index is None:
                current.append(active_filter)
            else:
                del current[index]
        self.set_state(active_filters=tuple(current), current_page=1)

    def remove_refiner(self, filter_name: str, value: str | None = None) -> None:
        if value is None:
            remaining = tuple(f for f in self._state.filters.active_filters if f.filter_name != filter_name)
        else:
            remaining = tuple(
                f
                for f in self._state.filters.active_filters
                if not (f.filter_name == filter_name and f.value == value)
            )
        self.set_state(active_filters=remaining, current_page=1)

    def clear_all_filters(self) -> None:
        self.set_state(active_filters=(), current_page=1)

    def set_available_refiners(self, refiners: Iterable[Refiner]) -> None:
        self.set_state(available_refiners=tuple(refiners))

    def set_filter_config(self, configs: Iterable[FilterConfig]) -> None:
        self.set_state(filter_config=tuple(configs))

    def set_results(self, items: Iterable[SearchResult], total_count: int) -> None:
        self.set_state(items=tuple(items), total_count=total_count, is_loading=False, error=None)

    def set_page(self, page: int) -> None:
        self.set_state(current_page=max(1, page))

    def set_sort(self, sort: SortField | None) -> None:
        self.set_state(sort=sort, current_page=1)

    def set_promoted_results(self, promoted: Iterable[PromotedResultItem]) -> None:
        self.set_state(promoted_results=tuple(promoted))

    def set_query_suggestion(self, suggestion: str | None) -> None:
        self.set_state(query_suggestion=suggestion)

    def set_loading(self, is_loading: bool) -> None:
        self.set_state(is_loading=is_loading)

    def set_error(self, error: str | None) -> None:
        self.set_state(error=error, is_loading=False)

    def set_vertical(self, key: str) -> None:
        self.set_state(current_vertical_key=key, current_page=1)

    def set_verticals(self, verticals: Iterable[VerticalDefinition]) -> None:
        ordered = sorted(verticals, key=lambda vertical: vertical.sort_order)
        self.set_state(verticals=tuple(ordered))

    def set_vertical_counts(self, counts: Mapping[str, int]) -> None:
        self.set_state(vertical_counts=dict(counts))

    def set_layout(self, key: str) -> None:
        self.set_state(active_layout_key=key)

    def toggle_search_manager(self, is_open: bool | None = None) -> None:
        current = self._state.ui.is_search_manager_open
        self.set_state(is_search_manager_open=(not current) if is_open is None else is_open)

    def set_preview_item(self, item: SearchResult | None) -> None:
        self.set_state(preview_item=item)

    def toggle_selection(self, key: str, multi_select: bool) -> None:
        current = self._state.ui.selected_keys
        if key in current:
            updated = tuple(k for k in current if k != key)
        elif multi_select:
            updated = (*current, key)
        else:
            updated = (key,)
        self.set_state(selected_keys=updated)

    def clear_selection(self) -> None:
        self.set_state(selected_keys=())

    def set_current_user_groups(self, groups: Iterable[str]) -> None:
        self.set_state(current_user_groups=tuple(groups))

    def set_saved_searches(self, searches: Iterable[SavedSearch]) -> None:
        self.set_state(saved_searches=tuple(searches))

    def set_search_history(self, history: Iterable[SearchHistoryEntry]) -> None:
        self.set_state(search_history=tuple(history))

    def set_collections(self, collections: Iterable[SearchCollection]) -> None:
        self.set_state(collections=tuple(collections))

    def add_saved_search(self, search: SavedSearch) -> None:
        self.set_state(saved_searches=(search, *self._state.user.saved_searches))

    def remove_saved_search(self, search_id: int) -> None:
        self.set_state(
            saved_searches=tuple(s for s in self._state.user.saved_searches if s.id != search_id)
        )

    def add_to_history(self, entry: SearchHistoryEntry) -> None:
        remaining = [h for h in self._state.user.search_history if h.query_hash != entry.query_hash]
        self.set_state(search_history=tuple([entry, *remaining][: self.config.history_limit]))

    def clear_search_history(self) -> None:
        self.set_state(search_history=())
