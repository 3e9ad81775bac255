from search_session.config import FilterConfig
from search_session.query.compiler import (
    DEFAULT_SELECTED_PROPERTIES,
    build_query,
    build_refinement_expressions,
    build_selected_properties,
    build_sort_list,
    compile_search_query,
)
from search_session.query.tokens import TokenContext
from search_session.store.state import SessionState, VerticalDefinition
from search_session.types import ActiveFilter, SearchScope, SortEntry, SortField


def test_refinement_expressions_group_by_first_occurrence() -> None:
    filters = [
        ActiveFilter("FileType", '"docx"'),
        ActiveFilter("Author", '"John"'),
        ActiveFilter("FileType", '"pptx"'),
    ]

    assert build_refinement_expressions(filters) == [
        'FileType:or("docx","pptx")',
        'Author:"John"',
    ]


def test_refinement_expressions_pass_tokens_through() -> None:
    token = "range(decimal(10), decimal(20))"

    assert build_refinement_expressions([ActiveFilter("Size", token)]) == [f"Size:{token}"]
    assert build_refinement_expressions([]) == []


def test_sort_list_directions() -> None:
    assert build_sort_list(None) == []
    assert build_sort_list(SortField("Title", "Ascending")) == [SortEntry("Title", 0)]
    assert build_sort_list(SortField("LastModifiedTime")) == [SortEntry("LastModifiedTime", 1)]


def test_selected_properties_defaults_first_without_duplicates() -> None:
    assert build_selected_properties() == list(DEFAULT_SELECTED_PROPERTIES)

    merged = build_selected_properties(["Custom", "Title", "Custom", "Other"])

    assert merged[: len(DEFAULT_SELECTED_PROPERTIES)] == list(DEFAULT_SELECTED_PROPERTIES)
    assert merged[len(DEFAULT_SELECTED_PROPERTIES) :] == ["Custom", "Other"]


def test_build_query_trims_resolved_template() -> None:
    assert build_query("  {searchTerms} ", "budget", TokenContext()) == "budget"


def test_compile_uses_vertical_overrides_and_wildcard() -> None:
    vertical = VerticalDefinition(
        key="docs",
        label="Documents",
        query_template="{searchTerms} IsDocument:1",
        result_source_id="rs-docs",
        filter_config=(FilterConfig(managed_property="FileType"),),
    )
    state = SessionState.initial().with_fields(
        verticals=(vertical,),
        current_vertical_key="docs",
        active_filters=(ActiveFilter("FileType", '"docx"'),),
        filter_config=(FilterConfig(managed_property="Author"),),
        sort=SortField("Title", "Ascending"),
        current_page=2,
    )

    query = compile_search_query(state, TokenContext())

    assert query.query_text == "*"
    assert query.compiled_query == "* IsDocument:1"
    assert query.result_source_id == "rs-docs"
    assert query.refiners == ("FileType",)
    assert query.refinement_filters == ('FileType:"docx"',)
    assert query.sort_list == (SortEntry("Title", 0),)
    assert query.page == 2
    assert query.page_size == 25


def test_compile_appends_scope_path() -> None:
    scope = SearchScope(id="site", label="This site", kql_path='Path:"https://contoso/sites/hr"')
    state = SessionState.initial().with_fields(query_text="leave", scope=scope)

    query = compile_search_query(state, TokenContext(), page_size=0, vertical_key="missing")

    assert query.compiled_query == 'leave Path:"https://contoso/sites/hr"'
    assert query.page_size == 0
    assert query.refiners == ()
