"""Two-way bridge between session state and the address bar.

State is mirrored into short, optionally namespaced query parameters:

=====  =====================================================
``sv``  schema version; without it nothing is read back
``q``   query text
``f``   active filters, base64 of a UTF-8 JSON array
``v``   vertical key
``s``   sort as ``property:Ascending|Descending``
``p``   page, only when greater than 1
``sc``  scope id
``l``   layout key, omitted for ``list``
=====  =====================================================

Writes are debounced and non-navigating. Reads happen on start and on every
back/forward navigation.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, Literal, Protocol, TypeVar
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from search_session.config import UrlSyncConfig
from search_session.store.scheduling import Scheduler, TimerHandle
from search_session.store.state import SessionState
from search_session.store.store import SearchStore
from search_session.types import ActiveFilter, SearchScope, SortField

logger = logging.getLogger(__name__)

PARAM_QUERY = "q"
PARAM_FILTERS = "f"
PARAM_VERTICAL = "v"
PARAM_SORT = "s"
PARAM_PAGE = "p"
PARAM_SCOPE = "sc"
PARAM_LAYOUT = "l"
PARAM_STATE_VERSION = "sv"

STATE_VERSION = "1"
DEFAULT_LAYOUT = "list"

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")

T = TypeVar("T")


def prefix_key(key: str, prefix: str | None = None) -> str:
    return f"{prefix}.{key}" if prefix else key


@dataclass(frozen=True, slots=True)
class Valid(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class Invalid:
    reason: str


class UrlFilterEntry(BaseModel):
    """Wire shape of one encoded filter."""

    model_config = ConfigDict(populate_by_name=True)

    filter_name: StrictStr = Field(alias="filterName")
    value: StrictStr
    operator: Literal["AND", "OR"]


def encode_filters(filters: Sequence[ActiveFilter]) -> str:
    payload = [
        {"filterName": item.filter_name, "value": item.value, "operator": item.operator}
        for item in filters
    ]
    raw = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_filters(encoded: str) -> Valid[tuple[ActiveFilter, ...]] | Invalid:
    """Decode and validate a filter payload entry by entry.

    Invalid entries are dropped individually; when none survive the whole
    payload is ``Invalid``.
    """

    try:
        raw = base64.b64decode(encoded.replace(" ", "+"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return Invalid("filters are not valid base64 UTF-8")

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return Invalid("filters are not valid JSON")

    if not isinstance(parsed, list):
        return Invalid("filters must be a JSON array")

    filters: list[ActiveFilter] = []
    for index, item in enumerate(parsed):
        try:
            entry = UrlFilterEntry.model_validate(item)
        except ValidationError as exc:
            logger.debug("Dropping filter entry %d from URL: %s", index, exc.errors())
            continue
        filters.append(ActiveFilter(filter_name=entry.filter_name, value=entry.value, operator=entry.operator))

    if not filters:
        return Invalid("no valid filter entries")
    return Valid(tuple(filters))


@dataclass(frozen=True, slots=True)
class UrlState:
    """Fields recovered from the address. ``None`` means absent."""

    query_text: str | None = None
    active_filters: tuple[ActiveFilter, ...] | None = None
    current_vertical_key: str | None = None
    sort: SortField | None = None
    current_page: int | None = None
    scope_id: str | None = None
    active_layout_key: str | None = None

    def is_empty(self) -> bool:
        return self == UrlState()


@dataclass(frozen=True, slots=True)
class UrlSnapshot:
    query_text: str
    active_filters: tuple[ActiveFilter, ...] = field(compare=False)
    current_vertical_key: str
    sort: SortField | None
    current_page: int
    scope_id: str
    active_layout_key: str

    def same_as(self, other: UrlSnapshot | None) -> bool:
        # The store always replaces the filter tuple, so identity is enough.
        return other is not None and self.active_filters is other.active_filters and self == other


def take_snapshot(state: SessionState) -> UrlSnapshot:
    return UrlSnapshot(
        query_text=state.query.query_text,
        active_filters=state.filters.active_filters,
        current_vertical_key=state.vertical.current_vertical_key,
        sort=state.results.sort,
        current_page=state.results.current_page,
        scope_id=state.query.scope.id,
        active_layout_key=state.ui.active_layout_key,
    )


class _QueryParams:
    """Ordered query parameters with set/delete semantics of a browser URL."""

    def __init__(self, query: str = "") -> None:
        self._pairs: list[tuple[str, str]] = parse_qsl(query, keep_blank_values=True)

    def get(self, key: str) -> str | None:
        for name, value in self._pairs:
            if name == key:
                return value
        return None

    def set(self, key: str, value: str) -> None:
        updated: list[tuple[str, str]] = []
        placed = False
        for name, existing in self._pairs:
            if name != key:
                updated.append((name, existing))
            elif not placed:
                updated.append((key, value))
                placed = True
        if not placed:
            updated.append((key, value))
        self._pairs = updated

    def delete(self, key: str) -> None:
        self._pairs = [(name, value) for name, value in self._pairs if name != key]

    def __str__(self) -> str:
        return urlencode(self._pairs)


def serialize_to_url(
    state: SessionState,
    existing_query: str = "",
    prefix: str | None = None,
    version: str = STATE_VERSION,
) -> str:
    """Return ``existing_query`` with this session's parameters rewritten."""

    params = _QueryParams(existing_query)

    def _put(key: str, value: str | None) -> None:
        if value:
            params.set(prefix_key(key, prefix), value)
        else:
            params.delete(prefix_key(key, prefix))

    params.set(prefix_key(PARAM_STATE_VERSION, prefix), version)
    _put(PARAM_QUERY, state.query.query_text)
    filters = state.filters.active_filters
    _put(PARAM_FILTERS, encode_filters(filters) if filters else None)
    _put(PARAM_VERTICAL, state.vertical.current_vertical_key)
    sort = state.results.sort
    _put(PARAM_SORT, f"{sort.property}:{sort.direction}" if sort else None)
    page = state.results.current_page
    _put(PARAM_PAGE, str(page) if page > 1 else None)
    _put(PARAM_SCOPE, state.query.scope.id)
    layout = state.ui.active_layout_key
    _put(PARAM_LAYOUT, layout if layout != DEFAULT_LAYOUT else None)
    return str(params)


def deserialize_from_url(query: str, prefix: str | None = None) -> UrlState:
    """Parse this session's parameters; returns an empty state without ``sv``."""

    params = _QueryParams(query)

    def _get(key: str) -> str | None:
        return params.get(prefix_key(key, prefix)) or None

    if _get(PARAM_STATE_VERSION) is None:
        return UrlState()

    active_filters = None
    filters_raw = _get(PARAM_FILTERS)
    if filters_raw is not None:
        decoded = decode_filters(filters_raw)
        if isinstance(decoded, Valid):
            active_filters = decoded.value
        else:
            logger.debug("Ignoring URL filters: %s", decoded.reason)

    sort = None
    sort_raw = _get(PARAM_SORT)
    if sort_raw is not None:
        prop, sep, direction = sort_raw.rpartition(":")
        if sep and prop and direction in ("Ascending", "Descending"):
            sort = SortField(property=prop, direction=direction)  # type: ignore[arg-type]

    current_page = None
    page_raw = _get(PARAM_PAGE)
    if page_raw is not None:
        match = _LEADING_INT.match(page_raw)
        if match is not None and int(match.group(1)) >= 1:
            current_page = int(match.group(1))

    return UrlState(
        query_text=_get(PARAM_QUERY),
        active_filters=active_filters,
        current_vertical_key=_get(PARAM_VERTICAL),
        sort=sort,
        current_page=current_page,
        scope_id=_get(PARAM_SCOPE),
        active_layout_key=_get(PARAM_LAYOUT),
    )


def apply_url_state(
    store: SearchStore,
    url_state: UrlState,
    scope_lookup: Callable[[str], SearchScope | None] | None = None,
) -> None:
    """Apply every present field to ``store`` as one transition."""

    patch: dict[str, object] = {}
    if url_state.query_text is not None:
        patch["query_text"] = url_state.query_text
    if url_state.active_filters is not None:
        patch["active_filters"] = url_state.active_filters
    if url_state.current_vertical_key is not None:
        patch["current_vertical_key"] = url_state.current_vertical_key
    if url_state.sort is not None:
        patch["sort"] = url_state.sort
    if url_state.current_page is not None:
        patch["current_page"] = url_state.current_page
    if url_state.scope_id is not None and store.state.query.scope.id != url_state.scope_id:
        # Only the id travels in the URL; the label is restored when known.
        scope = scope_lookup(url_state.scope_id) if scope_lookup else None
        patch["scope"] = scope or SearchScope(id=url_state.scope_id, label=url_state.scope_id)
    if url_state.active_layout_key is not None:
        patch["active_layout_key"] = url_state.active_layout_key
    if patch:
        store.set_state(**patch)


class AddressBar(Protocol):
    """The host's current address plus its back/forward notifications."""

    @property
    def url(self) -> str: ...

    def replace(self, url: str) -> None:
        """Update the address without creating a history entry."""

    def add_listener(self, listener: Callable[[], None]) -> None: ...

    def remove_listener(self, listener: Callable[[], None]) -> None: ...


class InMemoryAddressBar:
    """Address bar used by tests and the HTTP surface."""

    def __init__(self, url: str = "https://localhost/search") -> None:
        self._url = url
        self._listeners: list[Callable[[], None]] = []
        self.writes: list[str] = []

    @property
    def url(self) -> str:
        return self._url

    def replace(self, url: str) -> None:
        self._url = url
        self.writes.append(url)

    def navigate(self, url: str) -> None:
        """Simulate a back/forward navigation to ``url``."""
        self._url = url
        for listener in list(self._listeners):
            listener()

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)


def _query_of(url: str) -> str:
    return urlsplit(url).query


def _with_query(url: str, query: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class UrlSyncMiddleware:
    """Keeps one store and one address bar namespace in step.

    Owns a single debounce timer: every snapshot change resets it, and the
    write that fires serializes the store's state at that moment.
    """

    def __init__(
        self,
        store: SearchStore,
        address_bar: AddressBar,
        scheduler: Scheduler,
        *,
        prefix: str | None = None,
        config: UrlSyncConfig | None = None,
        scope_lookup: Callable[[str], SearchScope | None] | None = None,
    ) -> None:
        self.store = store
        self.address_bar = address_bar
        self.prefix = prefix
        self.config = config or UrlSyncConfig()
        self._scheduler = scheduler
        self._scope_lookup = scope_lookup
        self._timer: TimerHandle | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._last_snapshot: UrlSnapshot | None = None
        self._applying = False

    @property
    def is_running(self) -> bool:
        return self._unsubscribe is not None

    @property
    def has_pending_write(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        if self.is_running:
            return
        self._hydrate()
        self._last_snapshot = take_snapshot(self.store.state)
        self._unsubscribe = self.store.subscribe(self._on_store_change)
        self.address_bar.add_listener(self._on_navigate)
        self.store.add_dispose_callback(self.stop)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.address_bar.remove_listener(self._on_navigate)
        self._cancel_timer()

    def flush(self) -> None:
        """Write the current state immediately, dropping any pending timer."""
        self._cancel_timer()
        self._write()

    def current_query(self) -> str:
        return serialize_to_url(
            self.store.state,
            _query_of(self.address_bar.url),
            self.prefix,
            self.config.state_version,
        )

    def _hydrate(self) -> None:
        url_state = deserialize_from_url(_query_of(self.address_bar.url), self.prefix)
        if url_state.is_empty():
            return
        self._applying = True
        try:
            apply_url_state(self.store, url_state, self._scope_lookup)
        finally:
            self._applying = False
        self._last_snapshot = take_snapshot(self.store.state)

    def _on_store_change(self, state: SessionState, previous: SessionState) -> None:
        snapshot = take_snapshot(state)
        if snapshot.same_as(self._last_snapshot):
            return
        self._last_snapshot = snapshot
        if self._applying:
            return
        self._cancel_timer()
        self._timer = self._scheduler.call_later(self.config.debounce_ms / 1000.0, self._on_timer)

    def _on_navigate(self) -> None:
        self._cancel_timer()
        self._hydrate()

    def _on_timer(self) -> None:
        self._timer = None
        self._write()

    def _write(self) -> None:
        if self.store.is_disposed:
            return
        self.address_bar.replace(_with_query(self.address_bar.url, self.current_query()))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
