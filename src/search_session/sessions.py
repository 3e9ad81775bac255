"""Session registry: one store, orchestrator and URL bridge per session id."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from search_session.config import OrchestratorConfig, StoreConfig, UrlSyncConfig
from search_session.obs.tracing import SearchTraceStore
from search_session.orchestrator import SearchOrchestrator
from search_session.providers import (
    AudienceResolver,
    SearchManagerService,
    register_builtin_filter_types,
)
from search_session.query.formatters import FilterValueFormatterSet
from search_session.query.labels import ProfileLookup, TermLookup
from search_session.query.tokens import TokenContext
from search_session.registry import RegistryContainer
from search_session.store.scheduling import AsyncioScheduler, Scheduler
from search_session.store.store import SearchStore
from search_session.store.url_sync import AddressBar, InMemoryAddressBar, UrlSyncMiddleware

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"


@dataclass(slots=True)
class SearchSession:
    session_id: str
    store: SearchStore
    orchestrator: SearchOrchestrator
    url_sync: UrlSyncMiddleware | None = None
    manager: SearchManagerService | None = None
    initialized: bool = False


class SessionRegistry:
    """Owns every live session on one page.

    Sessions are created on first reference and live until disposed.
    ``on_create`` runs once per new session, before any search; register
    data providers there. ``initialize`` is idempotent: concurrent callers
    share one in-flight initialization.
    """

    def __init__(
        self,
        *,
        scheduler: Scheduler | None = None,
        address_bar: AddressBar | None = None,
        manager_factory: Callable[[str], SearchManagerService] | None = None,
        audience_resolver: AudienceResolver | None = None,
        term_lookup: TermLookup | None = None,
        profile_lookup: ProfileLookup | None = None,
        token_context: TokenContext | None = None,
        store_config: StoreConfig | None = None,
        url_sync_config: UrlSyncConfig | None = None,
        orchestrator_config: OrchestratorConfig | None = None,
        trace_store: SearchTraceStore | None = None,
        on_create: Callable[[SearchSession], None] | None = None,
    ) -> None:
        self.scheduler = scheduler or AsyncioScheduler()
        self.address_bar = address_bar or InMemoryAddressBar()
        self.trace_store = trace_store if trace_store is not None else SearchTraceStore()
        self._manager_factory = manager_factory
        self._audience_resolver = audience_resolver
        self._term_lookup = term_lookup
        self._profile_lookup = profile_lookup
        self._token_context = token_context
        self._store_config = store_config
        self._url_sync_config = url_sync_config
        self._orchestrator_config = orchestrator_config
        self._on_create = on_create
        self._sessions: dict[str, SearchSession] = {}
        self._init_tasks: dict[str, asyncio.Future[None]] = {}

    def get_or_create(self, session_id: str = DEFAULT_SESSION_ID) -> SearchSession:
        session = self._sessions.get(session_id)
        if session is not None:
            return session

        registries = RegistryContainer()
        formatters = FilterValueFormatterSet(
            registries.filter_types,
            term_lookup=self._term_lookup,
            profile_lookup=self._profile_lookup,
        )
        register_builtin_filter_types(registries.filter_types, formatters)
        store = SearchStore(
            session_id,
            config=self._store_config,
            registries=registries,
            formatters=formatters,
        )
        orchestrator = SearchOrchestrator(
            store,
            self.scheduler,
            config=self._orchestrator_config,
            token_context=self._token_context,
            trace_store=self.trace_store,
        )
        store.activate()
        session = SearchSession(session_id=session_id, store=store, orchestrator=orchestrator)
        if self._on_create is not None:
            self._on_create(session)
        self._sessions[session_id] = session
        return session

    def get_store(self, session_id: str = DEFAULT_SESSION_ID) -> SearchStore:
        return self.get_or_create(session_id).store

    def get_orchestrator(self, session_id: str = DEFAULT_SESSION_ID) -> SearchOrchestrator:
        return self.get_or_create(session_id).orchestrator

    def get_manager(self, session_id: str) -> SearchManagerService | None:
        session = self._sessions.get(session_id)
        return session.manager if session is not None else None

    def has(self, session_id: str) -> bool:
        return session_id in self._sessions

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    async def initialize(self, session_id: str = DEFAULT_SESSION_ID) -> SearchSession:
        session = self.get_or_create(session_id)
        if session.initialized:
            return session

        pending = self._init_tasks.get(session_id)
        if pending is None:
            pending = asyncio.ensure_future(self._do_initialize(session))
            self._init_tasks[session_id] = pending
            pending.add_done_callback(lambda _: self._init_tasks.pop(session_id, None))
        await asyncio.shield(pending)
        return session

    async def _do_initialize(self, session: SearchSession) -> None:
        store = session.store
        if self._manager_factory is not None:
            manager = self._manager_factory(session.session_id)
            try:
                await manager.initialize()
                rules = await manager.load_promotion_rules()
                saved = await manager.load_saved_searches()
                history = await manager.load_history()
            except Exception as exc:
                logger.warning("Search manager unavailable for session %s: %s", session.session_id, exc)
            else:
                session.manager = manager
                session.orchestrator.set_history_service(manager)
                session.orchestrator.set_promotion_rules(rules)
                store.set_saved_searches(saved)
                store.set_search_history(history)

        if store.is_disposed:
            return

        session.orchestrator.start()

        prefix = session.session_id if session.session_id != DEFAULT_SESSION_ID else None
        session.url_sync = UrlSyncMiddleware(
            store,
            self.address_bar,
            self.scheduler,
            prefix=prefix,
            config=self._url_sync_config,
        )
        session.url_sync.start()

        if self._audience_resolver is not None:
            self.scheduler.spawn(self._resolve_user_groups(store, self._audience_resolver))

        session.initialized = True

    async def _resolve_user_groups(self, store: SearchStore, resolver: AudienceResolver) -> None:
        try:
            groups = await resolver.get_user_groups()
        except Exception as exc:
            # Empty groups keep audience-targeted promotions hidden.
            logger.info("Audience groups unavailable for session %s: %s", store.session_id, exc)
            groups = []
        store.set_current_user_groups(groups)

    def dispose(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.store.dispose()

    def dispose_all(self) -> None:
        for session_id in list(self._sessions):
            self.dispose(session_id)
