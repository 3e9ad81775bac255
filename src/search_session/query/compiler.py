"""Compile session state into the backend's query language."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from search_session.query.tokens import TokenContext, resolve_tokens
from search_session.store.state import SessionState
from search_session.types import ActiveFilter, SearchQuery, SortEntry, SortField

DEFAULT_SELECTED_PROPERTIES: tuple[str, ...] = (
    "Title",
    "Path",
    "Filename",
    "Author",
    "AuthorOWSUSER",
    "Created",
    "LastModifiedTime",
    "FileType",
    "FileExtension",
    "SecondaryFileExtension",
    "contentclass",
    "HitHighlightedSummary",
    "HitHighlightedProperties",
    "SiteName",
    "SiteTitle",
    "SPSiteURL",
    "ServerRedirectedURL",
    "ServerRedirectedPreviewURL",
    "PictureThumbnailURL",
    "ParentLink",
    "ViewsLifeTime",
    "Size",
    "NormSiteID",
    "NormListID",
    "NormUniqueID",
    "DocId",
    "IsDocument",
)


def build_query(template: str, query_text: str, context: TokenContext) -> str:
    """Resolve ``template`` with the live query text and trim the result."""
    return resolve_tokens(template, context.with_query_text(query_text)).strip()


def build_refinement_expressions(active_filters: Iterable[ActiveFilter]) -> list[str]:
    """Group filters by property name in order of first occurrence.

    A single value yields ``name:token``; several yield ``name:or(t1,t2,...)``.
    Tokens are passed through untouched.

    >>> build_refinement_expressions([
    ...     ActiveFilter("FileType", '"docx"'),
    ...     ActiveFilter("FileType", '"pptx"'),
    ...     ActiveFilter("Author", '"John"'),
    ... ])
    ['FileType:or("docx","pptx")', 'Author:"John"']
    """

    grouped: dict[str, list[str]] = {}
    for active in active_filters:
        grouped.setdefault(active.filter_name, []).append(active.value)

    expressions: list[str] = []
    for name, values in grouped.items():
        if len(values) == 1:
            expressions.append(f"{name}:{values[0]}")
        else:
            expressions.append(f"{name}:or({','.join(values)})")
    return expressions


def build_sort_list(sort: SortField | None) -> list[SortEntry]:
    if sort is None:
        return []
    return [SortEntry(property=sort.property, direction=0 if sort.direction == "Ascending" else 1)]


def build_selected_properties(custom: Sequence[str] | None = None) -> list[str]:
    # dict keeps insertion order, defaults first
    merged = dict.fromkeys(DEFAULT_SELECTED_PROPERTIES)
    for name in custom or ():
        merged.setdefault(name)
    return list(merged)


def compile_search_query(
    state: SessionState,
    context: TokenContext,
    *,
    selected_properties: Sequence[str] | None = None,
    page_size: int | None = None,
    vertical_key: str | None = None,
) -> SearchQuery:
    """Build the immutable request for one search execution.

    The active vertical (or ``vertical_key`` when given) overrides the query
    template and result source. A scope path restriction is appended to the
    compiled text. Refiners are the managed properties of the
    effective filter configuration.
    """

    vertical = state.current_vertical
    if vertical_key is not None:
        vertical = next((v for v in state.vertical.verticals if v.key == vertical_key), None)

    template = state.query.query_template or "{searchTerms}"
    result_source_id = state.query.scope.result_source_id
    if vertical is not None:
        template = vertical.query_template or template
        result_source_id = vertical.result_source_id or result_source_id

    filter_config = state.filters.filter_config
    if vertical is not None and vertical.filter_config:
        filter_config = vertical.filter_config

    query_text = state.query.query_text or "*"
    compiled = build_query(template, query_text, context)
    if state.query.scope.kql_path:
        compiled = f"{compiled} {state.query.scope.kql_path}".strip()
    filters = state.filters.active_filters
    sort = state.results.sort
    return SearchQuery(
        query_text=query_text,
        query_template=template,
        compiled_query=compiled,
        scope=state.query.scope,
        filters=filters,
        refinement_filters=tuple(build_refinement_expressions(filters)),
        sort=sort,
        sort_list=tuple(build_sort_list(sort)),
        page=state.results.current_page,
        page_size=state.results.page_size if page_size is None else page_size,
        selected_properties=tuple(build_selected_properties(selected_properties)),
        refiners=tuple(config.managed_property for config in filter_config),
        result_source_id=result_source_id,
    )
