import asyncio

from search_session.config import FilterConfig, OrchestratorConfig
from search_session.obs.tracing import SearchTraceStore
from search_session.orchestrator import NO_PROVIDER_ERROR, SearchOrchestrator
from search_session.promotions import PromotedDisplay, PromotionRule
from search_session.providers import InMemorySearchManager, InMemorySearchProvider
from search_session.store.scheduling import CancellationToken
from search_session.store.state import VerticalDefinition
from search_session.store.store import SearchStore
from search_session.types import PromotedResultItem, SearchQuery, SearchResponse, SearchResult


def _documents() -> list[SearchResult]:
    return [
        SearchResult(
            key="1",
            title="Budget 2024",
            url="https://contoso/budget-2024.xlsx",
            properties={"FileType": "xlsx", "Size": 2048},
        ),
        SearchResult(
            key="2",
            title="Budget review",
            url="https://contoso/budget-review.docx",
            properties={"FileType": "docx", "Size": 512},
        ),
        SearchResult(
            key="3",
            title="Travel policy",
            url="https://contoso/travel.docx",
            properties={"FileType": "docx", "Size": 128},
        ),
    ]


def _setup(scheduler, provider=None, **config):
    store = SearchStore()
    store.activate()
    if provider is not None:
        store.registries.data_providers.register(provider)
    traces = SearchTraceStore()
    orchestrator = SearchOrchestrator(
        store, scheduler, config=OrchestratorConfig(**config), trace_store=traces
    )
    orchestrator.start()
    return store, orchestrator, traces


def test_query_changes_are_debounced_into_one_search(scheduler) -> None:
    provider = InMemorySearchProvider(_documents())
    store, _, traces = _setup(scheduler, provider)

    store.set_query_text("b")
    store.set_query_text("bud")
    store.set_query_text("budget")
    assert scheduler.spawned == []

    scheduler.advance(0.3)
    asyncio.run(scheduler.drain())

    assert [query.query_text for query in provider.executed] == ["budget"]
    assert [item.key for item in store.state.results.items] == ["1", "2"]
    assert store.state.results.total_count == 2
    assert not store.state.results.is_loading
    assert not store.state.query.is_searching
    assert len(traces) == 1


def test_page_change_searches_immediately(scheduler) -> None:
    provider = InMemorySearchProvider(_documents())
    store, _, _ = _setup(scheduler, provider)

    store.set_page(2)

    assert scheduler.pending_timers() == []
    asyncio.run(scheduler.drain())
    assert provider.executed[-1].page == 2


def test_refiners_and_filters_flow_through(scheduler) -> None:
    provider = InMemorySearchProvider(_documents())
    store, orchestrator, _ = _setup(scheduler, provider)
    store.set_filter_config([FilterConfig(managed_property="FileType")])

    store.set_refiner(store.formatters.build_active_filter(FilterConfig(managed_property="FileType"), "docx"))
    scheduler.advance(0.3)
    asyncio.run(scheduler.drain())

    assert provider.executed[-1].refinement_filters == ("FileType:docx",)
    assert {item.key for item in store.state.results.items} == {"2", "3"}
    (refiner,) = store.state.filters.available_refiners
    assert refiner.filter_name == "FileType"
    assert [(v.value, v.count, v.is_selected) for v in refiner.values] == [("docx", 2, True)]


def test_missing_provider_sets_error(scheduler) -> None:
    store, orchestrator, traces = _setup(scheduler)

    asyncio.run(orchestrator.trigger_search())

    assert store.state.results.error == NO_PROVIDER_ERROR
    assert not store.state.results.is_loading
    assert len(traces) == 0


def test_provider_failure_is_reported_not_raised(scheduler) -> None:
    class _FailingProvider(InMemorySearchProvider):
        async def execute(self, query: SearchQuery, token: CancellationToken) -> SearchResponse:
            raise RuntimeError("backend unavailable")

    store, orchestrator, traces = _setup(scheduler, _FailingProvider(provider_id="failing"))

    asyncio.run(orchestrator.trigger_search())

    assert store.state.results.error == "backend unavailable"
    assert not store.state.results.is_loading
    assert traces.summary()["failed_searches"] == 1


def test_superseded_search_results_are_dropped(scheduler) -> None:
    class _GatedProvider(InMemorySearchProvider):
        def __init__(self, documents: list[SearchResult]) -> None:
            super().__init__(documents, provider_id="gated")
            self.gate = asyncio.Event()
            self.calls = 0

        async def execute(self, query: SearchQuery, token: CancellationToken) -> SearchResponse:
            self.calls += 1
            if self.calls == 1:
                await self.gate.wait()
            return await super().execute(query, token)

    provider = _GatedProvider(_documents())
    store, orchestrator, traces = _setup(scheduler, provider)

    async def _scenario() -> None:
        store.set_state(query_text="budget")
        first = asyncio.ensure_future(orchestrator.trigger_search())
        await asyncio.sleep(0)
        store.set_state(query_text="travel")
        await orchestrator.trigger_search()
        provider.gate.set()
        await first

    asyncio.run(_scenario())

    assert [item.key for item in store.state.results.items] == ["3"]
    assert traces.summary()["cancelled_searches"] == 1
    assert traces.summary()["completed_searches"] == 1


def test_promotions_merge_rules_before_backend(scheduler) -> None:
    backend = (
        PromotedResultItem(title="Backend", url="https://contoso/backend"),
        PromotedResultItem(title="Dup", url="https://contoso/rule-1"),
        PromotedResultItem(title="Extra", url="https://contoso/extra"),
    )
    provider = InMemorySearchProvider(_documents(), promoted_results=backend)
    store, orchestrator, _ = _setup(scheduler, provider)
    orchestrator.set_promotion_rules(
        [
            PromotionRule(
                id=1,
                match_type="contains",
                match_value="budget",
                promoted_items=[
                    PromotedDisplay(url="https://contoso/rule-2", title="Rule 2", position=2),
                    PromotedDisplay(url="https://contoso/rule-1", title="Rule 1", position=1),
                ],
            )
        ]
    )

    store.set_state(query_text="budget")
    asyncio.run(orchestrator.trigger_search())

    assert [item.url for item in store.state.results.promoted_results] == [
        "https://contoso/rule-1",
        "https://contoso/rule-2",
        "https://contoso/backend",
    ]


def test_vertical_counts_fetched_for_every_vertical(scheduler) -> None:
    provider = InMemorySearchProvider(_documents())
    store, orchestrator, _ = _setup(scheduler, provider)
    store.set_verticals(
        [
            VerticalDefinition(key="all", label="All"),
            VerticalDefinition(key="docs", label="Documents", query_template="{searchTerms} IsDocument:1"),
        ]
    )
    store.set_state(query_text="budget")

    async def _run() -> None:
        await orchestrator.trigger_search()
        await scheduler.drain()

    asyncio.run(_run())

    assert store.state.vertical.vertical_counts == {"all": 2, "docs": 2}
    count_queries = provider.executed[1:]
    assert {query.compiled_query for query in count_queries} == {"budget", "budget IsDocument:1"}
    assert all(query.page_size == 0 for query in count_queries)


def test_history_logged_and_clicks_attached(scheduler) -> None:
    provider = InMemorySearchProvider(_documents())
    manager = InMemorySearchManager()
    store, orchestrator, _ = _setup(scheduler, provider, fetch_vertical_counts=False)
    orchestrator.set_history_service(manager)
    store.set_state(query_text="budget")

    async def _run() -> list:
        await orchestrator.trigger_search()
        await orchestrator.trigger_search()
        await scheduler.drain()
        orchestrator.log_clicked_item("https://contoso/budget-2024.xlsx", "Budget 2024", 1)
        await scheduler.drain()
        return await manager.load_history()

    history = asyncio.run(_run())

    assert orchestrator.last_history_id == 1
    assert len(history) == 1
    assert history[0].result_count == 2
    assert [click.position for click in history[0].clicked_items] == [1]
    assert [entry.query_text for entry in store.state.user.search_history] == ["budget"]


def test_history_failure_does_not_fail_search(scheduler) -> None:
    class _BrokenManager(InMemorySearchManager):
        async def log_search(self, *args, **kwargs) -> int:
            raise RuntimeError("list throttled")

    provider = InMemorySearchProvider(_documents())
    store, orchestrator, _ = _setup(scheduler, provider)
    orchestrator.set_history_service(_BrokenManager())
    store.set_state(query_text="budget")

    async def _run() -> None:
        await orchestrator.trigger_search()
        await scheduler.drain()

    asyncio.run(_run())

    assert store.state.results.total_count == 2
    assert store.state.results.error is None
    assert store.state.user.search_history == ()


def test_first_search_freezes_registries(scheduler) -> None:
    provider = InMemorySearchProvider(_documents())
    store, orchestrator, _ = _setup(scheduler, provider)

    asyncio.run(orchestrator.trigger_search())
    store.registries.data_providers.register(InMemorySearchProvider(provider_id="late"))

    assert store.registries.data_providers.is_frozen()
    assert "late" not in store.registries.data_providers


def test_stop_cancels_pending_debounce(scheduler) -> None:
    provider = InMemorySearchProvider(_documents())
    store, orchestrator, _ = _setup(scheduler, provider)

    store.set_query_text("budget")
    orchestrator.stop()
    scheduler.advance(1.0)

    assert scheduler.spawned == []
    assert not orchestrator.is_running


def test_injected_empty_trace_store_is_used(scheduler) -> None:
    traces = SearchTraceStore()
    orchestrator = SearchOrchestrator(SearchStore(), scheduler, trace_store=traces)

    assert len(traces) == 0
    assert orchestrator.trace_store is traces


def test_vertical_counts_skip_verticals_outside_user_audience(scheduler) -> None:
    provider = InMemorySearchProvider(_documents())
    store, orchestrator, _ = _setup(scheduler, provider)
    store.set_verticals(
        [
            VerticalDefinition(key="all", label="All"),
            VerticalDefinition(key="docs", label="Documents", query_template="{searchTerms} IsDocument:1"),
            VerticalDefinition(key="hr", label="HR", audience_groups=("hr-team",)),
        ]
    )
    store.set_current_user_groups(["finance"])
    store.set_state(query_text="budget")

    async def _run() -> None:
        await orchestrator.trigger_search()
        await scheduler.drain()

    asyncio.run(_run())

    assert store.state.vertical.vertical_counts == {"all": 2, "docs": 2}
    assert len(provider.executed) == 3
