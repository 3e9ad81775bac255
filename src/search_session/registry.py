"""Named provider registries with a configuration-phase freeze."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Generic, Protocol, TypeVar

if TYPE_CHECKING:
    from search_session.providers import (
        ActionProvider,
        FilterTypeDefinition,
        LayoutDefinition,
        SearchDataProvider,
        SuggestionProvider,
    )

logger = logging.getLogger(__name__)


class HasId(Protocol):
    @property
    def id(self) -> str: ...


T = TypeVar("T", bound=HasId)


class Registry(Generic[T]):
    """Stores providers/definitions by id.

    Duplicate ids keep the first registration unless ``force`` is passed.
    Once frozen, every mutation is refused. Misuse is reported as a warning
    (logger plus optional observer) and never raises, so extension authors
    fail soft.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._items: dict[str, T] = {}
        self._frozen = False
        self._observer: Callable[[str], None] | None = None

    def set_observer(self, observer: Callable[[str], None] | None) -> None:
        """Set an optional callback receiving each registry warning."""
        self._observer = observer

    def register(self, item: T, force: bool = False) -> None:
        if self._frozen:
            self._warn(
                f"{self.name} registry is frozen. Cannot register {item.id!r}. "
                "Registries lock after the first search execution."
            )
            return

        if item.id in self._items and not force:
            self._warn(
                f"{self.name} registry already contains {item.id!r}. "
                "First registration wins. Use force=True to override."
            )
            return

        self._items[item.id] = item

    def get(self, item_id: str) -> T | None:
        return self._items.get(item_id)

    def get_all(self) -> list[T]:
        return list(self._items.values())

    def freeze(self) -> None:
        self._frozen = True

    def is_frozen(self) -> bool:
        return self._frozen

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self._observer is not None:
            self._observer(message)


class RegistryContainer:
    """The five per-session registries shared by every bound surface."""

    def __init__(self) -> None:
        self.data_providers: Registry[SearchDataProvider] = Registry("DataProvider")
        self.suggestions: Registry[SuggestionProvider] = Registry("SuggestionProvider")
        self.actions: Registry[ActionProvider] = Registry("ActionProvider")
        self.layouts: Registry[LayoutDefinition] = Registry("Layout")
        self.filter_types: Registry[FilterTypeDefinition] = Registry("FilterType")

    def all(self) -> list[Registry]:
        return [
            self.data_providers,
            self.suggestions,
            self.actions,
            self.layouts,
            self.filter_types,
        ]

    def freeze_all(self) -> None:
        for registry in self.all():
            registry.freeze()

    def set_observer(self, observer: Callable[[str], None] | None) -> None:
        for registry in self.all():
            registry.set_observer(observer)
