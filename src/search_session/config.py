"""Configuration models for search sessions."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from search_session.types import FilterOperator


class StoreConfig(BaseModel):
    """Configures session store defaults."""

    page_size: int = Field(default=25, ge=1, le=500)
    history_limit: int = Field(default=50, ge=1)
    default_layout: str = Field(default="list", min_length=1)
    default_vertical: str = Field(default="all", min_length=1)


class UrlSyncConfig(BaseModel):
    """Configures the address bar bridge."""

    debounce_ms: int = Field(default=300, ge=0)
    state_version: str = Field(default="1", min_length=1)


class OrchestratorConfig(BaseModel):
    """Configures search execution and promoted results."""

    debounce_ms: int = Field(default=300, ge=0)
    max_promoted_results: int = Field(default=3, ge=0)
    fetch_vertical_counts: bool = True
    target_latency_ms: float = Field(default=2000.0, gt=0.0)


class FilterConfig(BaseModel):
    """Authoring metadata for one filter group, keyed by managed property."""

    model_config = ConfigDict(frozen=True)

    managed_property: str = Field(min_length=1)
    display_name: str = ""
    filter_type: str = "checkbox"
    operator: FilterOperator = "OR"
    max_values: int = Field(default=10, ge=1)
    default_expanded: bool = True
    show_count: bool = True
    sort_by: Literal["count", "alphabetical", "custom"] = "count"
    sort_direction: Literal["asc", "desc"] = "desc"
    range_min: float | None = None
    range_max: float | None = None
    range_step: float | None = None
    range_format: Literal["number", "bytes", "currency"] = "number"
    currency: str = "USD"
    term_set_id: str | None = None
    include_children: bool = False
    true_label: str | None = None
    false_label: str | None = None
