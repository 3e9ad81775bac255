from datetime import datetime, timezone

import pytest

from search_session.config import StoreConfig
from search_session.store.state import SessionState, VerticalDefinition
from search_session.store.store import SearchStore
from search_session.types import ActiveFilter, SearchHistoryEntry, SearchScope, SortField


def _history(entry_id: int, query_hash: str) -> SearchHistoryEntry:
    return SearchHistoryEntry(
        id=entry_id,
        query_hash=query_hash,
        query_text=f"q{entry_id}",
        vertical="all",
        scope="all",
        search_state="{}",
        result_count=0,
        search_timestamp=datetime(2024, 1, entry_id, tzinfo=timezone.utc),
    )


def _active_store(**config) -> SearchStore:
    store = SearchStore(config=StoreConfig(**config))
    store.activate()
    return store


def test_initial_state_uses_config_defaults() -> None:
    store = SearchStore(config=StoreConfig(page_size=10, default_layout="grid", default_vertical="docs"))

    assert store.status == "uninitialized"
    assert store.state.results.page_size == 10
    assert store.state.ui.active_layout_key == "grid"
    assert store.state.vertical.current_vertical_key == "docs"
    assert store.state.query.scope.id == "all"


def test_set_refiner_toggles_filter_off_again() -> None:
    store = _active_store()
    docx = ActiveFilter("FileType", '"docx"')

    store.set_refiner(docx)
    assert store.state.filters.active_filters == (docx,)

    store.set_refiner(docx)
    assert store.state.filters.active_filters == ()


def test_range_filters_are_exclusive_per_property() -> None:
    store = _active_store()
    small = ActiveFilter("Size", "range(decimal(0), decimal(10))")
    large = ActiveFilter("Size", "range(decimal(10), max)")
    pdf = ActiveFilter("FileType", '"pdf"')

    store.set_refiner(small)
    store.set_refiner(pdf)
    store.set_refiner(large)
    assert store.state.filters.active_filters == (large, pdf)

    store.set_refiner(large)
    assert store.state.filters.active_filters == (pdf,)


def test_filter_and_query_changes_reset_page() -> None:
    store = _active_store()
    store.set_page(4)
    store.set_refiner(ActiveFilter("FileType", '"pdf"'))
    assert store.state.results.current_page == 1

    store.set_page(3)
    store.set_query_text("budget")
    assert store.state.results.current_page == 1

    store.set_page(2)
    store.set_sort(SortField("Title", "Ascending"))
    assert store.state.results.current_page == 1

    store.set_page(0)
    assert store.state.results.current_page == 1


def test_remove_refiner_and_clear() -> None:
    store = _active_store()
    for value in ('"pdf"', '"docx"'):
        store.set_refiner(ActiveFilter("FileType", value))
    store.set_refiner(ActiveFilter("Author", '"Jane"'))

    store.remove_refiner("FileType", '"pdf"')
    assert [f.value for f in store.state.filters.active_filters] == ['"docx"', '"Jane"']

    store.remove_refiner("FileType")
    assert [f.filter_name for f in store.state.filters.active_filters] == ["Author"]

    store.clear_all_filters()
    assert store.state.filters.active_filters == ()


def test_history_deduplicates_by_hash_and_caps() -> None:
    store = _active_store(history_limit=2)

    store.add_to_history(_history(1, "h1"))
    store.add_to_history(_history(2, "h2"))
    store.add_to_history(_history(3, "h1"))
    assert [entry.id for entry in store.state.user.search_history] == [3, 2]

    store.add_to_history(_history(4, "h4"))
    assert [entry.id for entry in store.state.user.search_history] == [4, 3]


def test_listeners_receive_new_and_previous_state() -> None:
    store = _active_store()
    seen: list[tuple[SessionState, SessionState]] = []
    unsubscribe = store.subscribe(lambda state, previous: seen.append((state, previous)))

    store.set_state(query_text="budget", current_vertical_key="docs", active_layout_key="grid")
    unsubscribe()
    store.set_query_text("ignored")

    assert len(seen) == 1
    state, previous = seen[0]
    assert previous.query.query_text == ""
    assert state.query.query_text == "budget"
    assert state.vertical.current_vertical_key == "docs"
    assert state.ui.active_layout_key == "grid"


def test_unknown_field_raises() -> None:
    with pytest.raises(KeyError):
        SessionState.initial().with_fields(not_a_field=1)


def test_begin_search_cancels_previous_token() -> None:
    store = _active_store()

    first = store.begin_search()
    second = store.begin_search()

    assert first.cancelled
    assert not second.cancelled
    assert store.state.query.is_searching

    store.end_search(second)
    assert not store.state.query.is_searching


def test_dispose_cancels_and_ignores_mutations() -> None:
    store = _active_store()
    calls: list[str] = []
    store.add_dispose_callback(lambda: calls.append("disposed"))
    store.subscribe(lambda state, previous: calls.append("changed"))
    token = store.begin_search()
    calls.clear()

    store.dispose()
    store.set_query_text("after")
    store.dispose()

    assert token.cancelled
    assert store.is_disposed
    assert store.state.query.query_text == ""
    assert calls == ["disposed"]
    assert store.begin_search().cancelled


def test_ui_actions() -> None:
    store = _active_store()

    store.toggle_selection("a", multi_select=False)
    store.toggle_selection("b", multi_select=False)
    assert store.state.ui.selected_keys == ("b",)

    store.toggle_selection("c", multi_select=True)
    store.toggle_selection("b", multi_select=True)
    assert store.state.ui.selected_keys == ("c",)

    store.toggle_search_manager()
    assert store.state.ui.is_search_manager_open
    store.toggle_search_manager(is_open=True)
    assert store.state.ui.is_search_manager_open

    store.clear_selection()
    assert store.state.ui.selected_keys == ()


def test_verticals_sorted_and_scope_change() -> None:
    store = _active_store()
    store.set_verticals(
        [
            VerticalDefinition(key="people", label="People", sort_order=2),
            VerticalDefinition(key="all", label="All", sort_order=0),
        ]
    )
    store.set_page(3)
    store.set_scope(SearchScope(id="site", label="This site"))

    assert [v.key for v in store.state.vertical.verticals] == ["all", "people"]
    assert store.state.query.scope.id == "site"
    assert store.state.results.current_page == 1
    assert store.state.current_vertical is not None
    assert store.state.current_vertical.label == "All"


def test_reset_restores_initial_state_in_one_transition() -> None:
    store = _active_store(page_size=10)
    store.set_state(query_text="budget", current_page=3, active_layout_key="grid")
    transitions: list[SessionState] = []
    store.subscribe(lambda state, previous: transitions.append(state))

    store.reset()

    assert len(transitions) == 1
    assert store.state == SessionState.initial(StoreConfig(page_size=10))


def test_visible_verticals_follow_user_audience() -> None:
    store = _active_store()
    store.set_verticals(
        [
            VerticalDefinition(key="all", label="All"),
            VerticalDefinition(key="hr", label="HR", audience_groups=("hr-team",), sort_order=1),
        ]
    )

    assert [v.key for v in store.state.visible_verticals] == ["all"]

    store.set_current_user_groups(["hr-team"])
    assert [v.key for v in store.state.visible_verticals] == ["all", "hr"]
