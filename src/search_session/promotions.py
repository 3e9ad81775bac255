"""Promoted results rule engine."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from search_session.types import PromotedResultItem

DEFAULT_MAX_PROMOTED = 3

MatchType = Literal["contains", "equals", "regex", "kql"]


class PromotedDisplay(BaseModel):
    """One promoted link. ``position`` orders items across all matching rules."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(min_length=1)
    title: str
    description: str | None = None
    image_url: str | None = None
    position: int = 0


class PromotionRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    match_type: MatchType
    match_value: str
    promoted_items: list[PromotedDisplay] = Field(default_factory=list)
    audience_groups: list[str] = Field(default_factory=list)
    start_date: datetime | None = None
    end_date: datetime | None = None
    vertical_scope: list[str] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("start_date", "end_date")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def is_in_audience(audience_groups: Sequence[str] | None, user_groups: Sequence[str]) -> bool:
    """True when there is no targeting or the user is in any target group."""
    if not audience_groups:
        return True
    return any(group in user_groups for group in audience_groups)


def matches_query(query_text: str, match_type: str, match_value: str) -> bool:
    normalized_query = query_text.lower().strip()
    normalized_value = match_value.lower().strip()

    if match_type == "contains":
        return normalized_value in normalized_query
    if match_type == "equals":
        return normalized_query == normalized_value
    if match_type == "regex":
        try:
            return re.search(match_value, query_text, re.IGNORECASE) is not None
        except re.error:
            return False
    if match_type == "kql":
        # Simplified: every whitespace-separated term must appear as a substring.
        terms = normalized_value.split()
        return bool(terms) and all(term in normalized_query for term in terms)
    return False


def _within_window(rule: PromotionRule, now: datetime) -> bool:
    if rule.start_date is not None and now < rule.start_date:
        return False
    if rule.end_date is not None and now > rule.end_date:
        return False
    return True


def evaluate_promoted_results(
    rules: Iterable[PromotionRule],
    query_text: str,
    vertical: str,
    max_results: int = DEFAULT_MAX_PROMOTED,
    user_groups: Sequence[str] | None = None,
    now: datetime | None = None,
) -> list[PromotedResultItem]:
    """Return the promoted items for ``query_text``.

    Rules are filtered by activity, validity window, vertical scope and
    audience (fail-closed when the user's groups are unknown), then matched.
    Items from all matching rules are pooled, stably sorted by position,
    deduplicated by URL with the first occurrence winning, and capped.
    """

    if not query_text or query_text == "*":
        return []

    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)

    pooled: list[PromotedDisplay] = []
    for rule in rules:
        if not rule.is_active or not _within_window(rule, moment):
            continue
        if rule.vertical_scope and vertical not in rule.vertical_scope:
            continue
        if rule.audience_groups and (
            user_groups is None or not is_in_audience(rule.audience_groups, user_groups)
        ):
            continue
        if not matches_query(query_text, rule.match_type, rule.match_value):
            continue
        pooled.extend(rule.promoted_items)

    pooled.sort(key=lambda item: item.position)

    seen: set[str] = set()
    results: list[PromotedResultItem] = []
    for item in pooled:
        if len(results) >= max_results:
            break
        if item.url in seen:
            continue
        seen.add(item.url)
        results.append(
            PromotedResultItem(
                title=item.title,
                url=item.url,
                description=item.description,
                icon_url=item.image_url,
            )
        )
    return results
