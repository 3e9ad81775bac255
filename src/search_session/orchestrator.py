"""Runs searches in response to store changes."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timezone

from search_session.config import OrchestratorConfig
from search_session.obs.tracing import SearchTraceStore, Timer
from search_session.promotions import PromotionRule, evaluate_promoted_results
from search_session.providers import SearchDataProvider, SearchManagerService, compute_state_hash
from search_session.query.compiler import compile_search_query
from search_session.query.tokens import TokenContext
from search_session.store.scheduling import CancellationToken, Scheduler, TimerHandle
from search_session.store.state import SessionState
from search_session.store.store import SearchStore
from search_session.types import PromotedResultItem, SearchHistoryEntry, SearchQuery, SearchResponse

logger = logging.getLogger(__name__)

NO_PROVIDER_ERROR = "No search data provider registered"


def _search_changed(state: SessionState, previous: SessionState) -> bool:
    return (
        state.query.query_text != previous.query.query_text
        or state.query.scope != previous.query.scope
        or state.filters.active_filters is not previous.filters.active_filters
        or state.vertical.current_vertical_key != previous.vertical.current_vertical_key
        or state.results.sort != previous.results.sort
    )


def serialize_search_state(state: SessionState) -> str:
    """JSON used for history storage and deduplication."""
    sort = state.results.sort
    return json.dumps(
        {
            "queryText": state.query.query_text,
            "activeFilters": [
                {"filterName": f.filter_name, "value": f.value, "operator": f.operator}
                for f in state.filters.active_filters
            ],
            "currentVerticalKey": state.vertical.current_vertical_key,
            "sort": {"property": sort.property, "direction": sort.direction} if sort else None,
            "scope": {"id": state.query.scope.id, "label": state.query.scope.label},
            "activeLayoutKey": state.ui.active_layout_key,
        },
        separators=(",", ":"),
    )


class SearchOrchestrator:
    """Subscribes to a store and executes searches through a data provider.

    Query, scope, filter, vertical and sort changes schedule a debounced
    search; page changes search immediately. A new search cancels the one in
    flight, and results of a cancelled search are dropped.
    """

    def __init__(
        self,
        store: SearchStore,
        scheduler: Scheduler,
        *,
        config: OrchestratorConfig | None = None,
        token_context: TokenContext | None = None,
        trace_store: SearchTraceStore | None = None,
    ) -> None:
        self.store = store
        self.config = config or OrchestratorConfig()
        self.token_context = token_context or TokenContext()
        self.trace_store = (
            trace_store
            if trace_store is not None
            else SearchTraceStore(target_latency_ms=self.config.target_latency_ms)
        )
        self._scheduler = scheduler
        self._timer: TimerHandle | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._history_service: SearchManagerService | None = None
        self._promotion_rules: list[PromotionRule] = []
        self._last_history_id = 0

    @property
    def last_history_id(self) -> int:
        return self._last_history_id

    @property
    def is_running(self) -> bool:
        return self._unsubscribe is not None

    def set_history_service(self, service: SearchManagerService | None) -> None:
        self._history_service = service

    def set_promotion_rules(self, rules: Iterable[PromotionRule]) -> None:
        self._promotion_rules = list(rules)

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_store_change)
            self.store.add_dispose_callback(self.stop)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_timer()
        self.store.cancel_search()

    async def trigger_search(self) -> None:
        """Run one search now, e.g. for the initial page load."""
        await self._execute()

    def _on_store_change(self, state: SessionState, previous: SessionState) -> None:
        if _search_changed(state, previous):
            self._cancel_timer()
            self._timer = self._scheduler.call_later(self.config.debounce_ms / 1000.0, self._on_timer)
        elif state.results.current_page != previous.results.current_page:
            self._cancel_timer()
            self._scheduler.spawn(self._execute())

    def _on_timer(self) -> None:
        self._timer = None
        self._scheduler.spawn(self._execute())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _get_provider(self, state: SessionState) -> SearchDataProvider | None:
        registry = self.store.registries.data_providers
        vertical = state.current_vertical
        if vertical is not None and vertical.data_provider_id:
            provider = registry.get(vertical.data_provider_id)
            if provider is not None:
                return provider
        providers = registry.get_all()
        return providers[0] if providers else None

    async def _execute(self) -> None:
        self._cancel_timer()
        store = self.store
        if store.is_disposed:
            return

        store.registries.freeze_all()
        state = store.state
        provider = self._get_provider(state)
        if provider is None:
            store.set_error(NO_PROVIDER_ERROR)
            return

        token = store.begin_search()
        store.set_state(is_loading=True, error=None)
        query = compile_search_query(state, self.token_context)

        error: str | None = None
        response: SearchResponse | None = None
        with Timer() as timer:
            try:
                response = await provider.execute(query, token)
            except Exception as exc:
                if not token.cancelled:
                    error = str(exc) or "Search failed"
                    logger.warning("Search failed for session %s: %s", store.session_id, error)

        if token.cancelled:
            self._record(provider, query, state, None, timer.elapsed_ms, cancelled=True)
            return

        if response is None:
            store.set_error(error)
            store.end_search(token)
            self._record(provider, query, state, None, timer.elapsed_ms, error=error)
            return

        store.set_results(response.items, response.total_count)
        if provider.supports_refiners and response.refiners:
            store.set_available_refiners(response.refiners)
        promoted = self._merge_promotions(state, response)
        store.set_promoted_results(promoted)
        store.set_query_suggestion(response.query_suggestion)
        store.end_search(token)
        self._record(provider, query, state, response, timer.elapsed_ms, promoted_count=len(promoted))

        if self.config.fetch_vertical_counts and len(state.visible_verticals) > 1:
            self._scheduler.spawn(self._fetch_vertical_counts(provider, state, token))
        if self._history_service is not None:
            self._scheduler.spawn(self._log_search(state, response.total_count))

    def _merge_promotions(self, state: SessionState, response: SearchResponse) -> list[PromotedResultItem]:
        from_rules = evaluate_promoted_results(
            self._promotion_rules,
            state.query.query_text,
            state.vertical.current_vertical_key,
            max_results=self.config.max_promoted_results,
            user_groups=state.ui.current_user_groups,
        )
        seen: set[str] = set()
        merged: list[PromotedResultItem] = []
        for item in (*from_rules, *response.promoted_results):
            if len(merged) >= self.config.max_promoted_results:
                break
            if item.url in seen:
                continue
            seen.add(item.url)
            merged.append(item)
        return merged

    async def _fetch_vertical_counts(
        self, provider: SearchDataProvider, state: SessionState, token: CancellationToken
    ) -> None:
        async def _count(key: str) -> tuple[str, int]:
            query = replace(
                compile_search_query(state, self.token_context, vertical_key=key),
                page=1,
                page_size=0,
                sort=None,
                sort_list=(),
                selected_properties=("Title",),
                refiners=(),
            )
            try:
                response = await provider.execute(query, token)
            except Exception as exc:
                logger.debug("Vertical count failed for %s: %s", key, exc)
                return key, 0
            return key, response.total_count

        counts = await asyncio.gather(*(_count(vertical.key) for vertical in state.visible_verticals))
        if token.cancelled:
            return
        self.store.set_vertical_counts(dict(counts))

    async def _log_search(self, state: SessionState, result_count: int) -> None:
        service = self._history_service
        if service is None:
            return
        search_state = serialize_search_state(state)
        try:
            history_id = await service.log_search(
                state.query.query_text,
                state.vertical.current_vertical_key,
                state.query.scope.id,
                search_state,
                result_count,
            )
        except Exception as exc:
            logger.warning("Search history logging failed: %s", exc)
            return
        if history_id <= 0:
            return
        self._last_history_id = history_id
        self.store.add_to_history(
            SearchHistoryEntry(
                id=history_id,
                query_hash=compute_state_hash(search_state),
                query_text=state.query.query_text,
                vertical=state.vertical.current_vertical_key,
                scope=state.query.scope.id,
                search_state=search_state,
                result_count=result_count,
                search_timestamp=datetime.now(timezone.utc),
            )
        )

    def log_clicked_item(self, url: str, title: str, position: int) -> None:
        """Attach a click to the last logged search, in the background."""
        if self._history_service is None or self._last_history_id <= 0:
            return
        self._scheduler.spawn(self._log_click(self._history_service, self._last_history_id, url, title, position))

    async def _log_click(
        self, service: SearchManagerService, history_id: int, url: str, title: str, position: int
    ) -> None:
        try:
            await service.log_clicked_item(history_id, url, title, position)
        except Exception as exc:
            logger.warning("Click logging failed: %s", exc)

    def _record(
        self,
        provider: SearchDataProvider,
        query: SearchQuery,
        state: SessionState,
        response: SearchResponse | None,
        latency_ms: float,
        *,
        promoted_count: int = 0,
        cancelled: bool = False,
        error: str | None = None,
    ) -> None:
        self.trace_store.create_record(
            session_id=self.store.session_id,
            provider_id=provider.id,
            query_text=query.query_text,
            compiled_query=query.compiled_query,
            refinement_filters=list(query.refinement_filters),
            vertical=state.vertical.current_vertical_key,
            page=query.page,
            total_count=response.total_count if response is not None else 0,
            promoted_count=promoted_count,
            latency_ms=latency_ms,
            cancelled=cancelled,
            error=error,
        )
