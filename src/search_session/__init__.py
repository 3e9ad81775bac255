"""Shared search session package."""

from .config import FilterConfig, OrchestratorConfig, StoreConfig, UrlSyncConfig

__all__ = ["FilterConfig", "OrchestratorConfig", "StoreConfig", "UrlSyncConfig"]
