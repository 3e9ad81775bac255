"""FastAPI entrypoint for session, compile, promotion and trace endpoints."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Literal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from search_session.config import FilterConfig
from search_session.obs.tracing import SearchTraceStore
from search_session.promotions import PromotionRule, evaluate_promoted_results
from search_session.providers import InMemorySearchManager, InMemorySearchProvider
from search_session.query.compiler import (
    build_query,
    build_refinement_expressions,
    build_selected_properties,
    build_sort_list,
)
from search_session.query.tokens import TokenContext
from search_session.sessions import SearchSession, SessionRegistry
from search_session.store.store import SearchStore
from search_session.types import ActiveFilter, SearchResult, SearchScope, SortField


class FilterPayload(BaseModel):
    filter_name: str = Field(min_length=1)
    value: str
    operator: Literal["AND", "OR"] = "OR"


class QueryRequest(BaseModel):
    query_text: str = ""
    scope_id: str | None = None
    scope_label: str | None = None


class ToggleFilterRequest(FilterPayload):
    filter_type: str | None = None


class SortPayload(BaseModel):
    property: str = Field(min_length=1)
    direction: Literal["Ascending", "Descending"] = "Descending"


class CompileRequest(BaseModel):
    query_template: str = "{searchTerms}"
    query_text: str = ""
    filters: list[FilterPayload] = Field(default_factory=list)
    sort: SortPayload | None = None
    selected_properties: list[str] = Field(default_factory=list)
    site_url: str = ""
    web_url: str = ""
    user_email: str = ""


class EvaluatePromotionsRequest(BaseModel):
    rules: list[PromotionRule] = Field(default_factory=list)
    query_text: str
    vertical: str = "all"
    max_results: int = Field(default=3, ge=0)
    user_groups: list[str] | None = None


class DocumentRequest(BaseModel):
    key: str = Field(min_length=1)
    title: str
    url: str
    summary: str = ""
    properties: dict[str, Any] = Field(default_factory=dict)


app = FastAPI(title="Search Session Service", version="0.1.0")

_trace_store = SearchTraceStore()
_search_provider = InMemorySearchProvider()


def _register_providers(session: SearchSession) -> None:
    session.store.registries.data_providers.register(_search_provider)


_sessions = SessionRegistry(
    trace_store=_trace_store,
    manager_factory=lambda _: InMemorySearchManager(),
    on_create=_register_providers,
)


def _existing_store(session_id: str) -> SearchStore:
    if not _sessions.has(session_id):
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return _sessions.get_store(session_id)


def _state_payload(store: SearchStore) -> dict[str, Any]:
    state = store.state
    return {
        "session_id": store.session_id,
        "status": store.status,
        "query_text": state.query.query_text,
        "scope": asdict(state.query.scope),
        "active_filters": [asdict(item) for item in state.filters.active_filters],
        "available_refiners": [asdict(item) for item in state.filters.available_refiners],
        "current_vertical_key": state.vertical.current_vertical_key,
        "verticals": [vertical.key for vertical in state.visible_verticals],
        "vertical_counts": dict(state.vertical.vertical_counts),
        "sort": asdict(state.results.sort) if state.results.sort else None,
        "current_page": state.results.current_page,
        "page_size": state.results.page_size,
        "total_count": state.results.total_count,
        "items": [asdict(item) for item in state.results.items],
        "promoted_results": [asdict(item) for item in state.results.promoted_results],
        "is_loading": state.results.is_loading,
        "error": state.results.error,
    }


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "session_count": len(_sessions),
        "document_count": len(_search_provider),
        "trace_count": len(_trace_store),
    }


@app.post("/documents")
def add_document(request: DocumentRequest) -> dict[str, Any]:
    _search_provider.add(
        SearchResult(
            key=request.key,
            title=request.title,
            url=request.url,
            summary=request.summary,
            properties=request.properties,
        )
    )
    return {"key": request.key}


@app.get("/sessions/{session_id}/state")
def session_state(session_id: str) -> dict[str, Any]:
    return _state_payload(_existing_store(session_id))


@app.post("/sessions/{session_id}/query")
async def set_query(session_id: str, request: QueryRequest) -> dict[str, Any]:
    session = await _sessions.initialize(session_id)
    store = session.store
    if request.scope_id is not None:
        store.set_scope(SearchScope(id=request.scope_id, label=request.scope_label or request.scope_id))
    store.set_query_text(request.query_text)
    return _state_payload(store)


@app.post("/sessions/{session_id}/filters/toggle")
async def toggle_filter(session_id: str, request: ToggleFilterRequest) -> dict[str, Any]:
    session = await _sessions.initialize(session_id)
    store = session.store
    if request.filter_type is None:
        active = ActiveFilter(filter_name=request.filter_name, value=request.value, operator=request.operator)
    else:
        config = FilterConfig(
            managed_property=request.filter_name,
            filter_type=request.filter_type,
            operator=request.operator,
        )
        active = store.formatters.build_active_filter(config, request.value)
        if active is None:
            raise HTTPException(status_code=400, detail="Filter value produces no query token")
    store.set_refiner(active)
    return _state_payload(store)


@app.delete("/sessions/{session_id}/filters")
async def clear_filters(session_id: str, filter_name: str | None = None) -> dict[str, Any]:
    store = _existing_store(session_id)
    if filter_name is None:
        store.clear_all_filters()
    else:
        store.remove_refiner(filter_name)
    return _state_payload(store)


@app.post("/sessions/{session_id}/search")
async def run_search(session_id: str) -> dict[str, Any]:
    session = await _sessions.initialize(session_id)
    await session.orchestrator.trigger_search()
    return _state_payload(session.store)


@app.get("/sessions/{session_id}/url")
def session_url(session_id: str) -> dict[str, Any]:
    store = _existing_store(session_id)
    url_sync = _sessions.get_or_create(session_id).url_sync
    if url_sync is None:
        raise HTTPException(status_code=409, detail=f"Session not initialized: {store.session_id}")
    return {"query": url_sync.current_query(), "prefix": url_sync.prefix}


@app.delete("/sessions/{session_id}")
async def dispose_session(session_id: str) -> dict[str, Any]:
    _existing_store(session_id)
    _sessions.dispose(session_id)
    return {"disposed": session_id}


@app.post("/compile")
def compile_query(request: CompileRequest) -> dict[str, Any]:
    context = TokenContext(site_url=request.site_url, web_url=request.web_url, user_email=request.user_email)
    filters = [
        ActiveFilter(filter_name=item.filter_name, value=item.value, operator=item.operator)
        for item in request.filters
    ]
    sort = SortField(property=request.sort.property, direction=request.sort.direction) if request.sort else None
    return {
        "compiled_query": build_query(request.query_template, request.query_text, context),
        "refinement_filters": build_refinement_expressions(filters),
        "sort_list": [asdict(entry) for entry in build_sort_list(sort)],
        "selected_properties": build_selected_properties(request.selected_properties),
    }


@app.post("/promotions/evaluate")
def evaluate_promotions(request: EvaluatePromotionsRequest) -> dict[str, Any]:
    items = evaluate_promoted_results(
        request.rules,
        request.query_text,
        request.vertical,
        max_results=request.max_results,
        user_groups=request.user_groups,
    )
    return {"items": [asdict(item) for item in items]}


@app.get("/traces")
def traces(limit: int = 20, session_id: str | None = None) -> dict[str, Any]:
    records = [asdict(record) for record in _trace_store.list_recent(limit=limit, session_id=session_id)]
    return {"items": records}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str) -> dict[str, Any]:
    try:
        record = _trace_store.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return _trace_store.summary()
