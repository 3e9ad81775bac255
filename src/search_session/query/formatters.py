"""Per-filter-type value codecs: display, query token and URL token.

Every active filter holds a backend token (``GP0|#<guid>``, a claims
principal, an FQL ``range(...)``). The formatters here translate those tokens
into human-readable labels, turn UI selections back into tokens and produce
URL-safe forms for deep links. Taxonomy and people labels need a network
lookup; those lookups are memoized per identifier for the session, and
concurrent requests for one identifier share a single pending future.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, unquote

from search_session.config import FilterConfig
from search_session.query.labels import LabelCache, ProfileLookup, TermLabel, TermLookup, TermRecord
from search_session.types import ActiveFilter

if TYPE_CHECKING:
    from search_session.providers import FilterTypeDefinition
    from search_session.registry import Registry

logger = logging.getLogger(__name__)

UNKNOWN_TERM = "(Unknown term)"
TAXONOMY_PREFIX = "GP0|#"
MEMBERSHIP_CLAIM_PREFIX = "i:0#.f|membership|"

# Cached in place of a record when the term store lookup raised.
_FAILED_TERM = TermRecord(id="", label=UNKNOWN_TERM)

_GUID = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
_BARE_GUID = re.compile(r"^" + _GUID.pattern + r"$")
_DECIMAL = re.compile(r"decimal\(([^)]+)\)", re.IGNORECASE)
_DATE_RANGE = re.compile(
    r'^range\(\s*datetime\("([^"]+)"\)\s*,\s*datetime\("([^"]+)"\)\s*\)$',
    re.IGNORECASE,
)
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥", "INR": "₹"}
_ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW"})


def strip_string_wrapper(value: str) -> str:
    if value.startswith('string("') and value.endswith('")') and len(value) >= 10:
        return value[8:-2]
    return value


def encode_url_value(value: str) -> str:
    return quote(value, safe="-_.!~*'()")


def decode_url_value(value: str) -> str:
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        return value


def extract_guid(value: str) -> str | None:
    match = _GUID.search(value)
    return match.group(0) if match else None


def _extract_embedded_label(token: str) -> str | None:
    # L0|#0<guid>|Label
    parts = token.split("|")
    if len(parts) >= 3:
        last = parts[-1].strip()
        if last and not last.startswith("#"):
            return last
    return None


def _login_from_claim(claim: str) -> str:
    return claim.rsplit("|", 1)[-1] or claim


@dataclass(frozen=True, slots=True)
class NumericRange:
    min: float | None = None
    max: float | None = None


def _parse_number(value: str) -> float | None:
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def _coerce_bound(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    return _parse_number(str(value))


def _parse_range_part(value: str) -> float | None:
    trimmed = value.strip()
    if trimmed in ("min", "max"):
        return None
    match = _DECIMAL.search(trimmed)
    return _parse_number(match.group(1) if match else trimmed)


def parse_range_token(raw_value: str) -> NumericRange | None:
    """Parse ``range(decimal(a), decimal(b))``; ``min``/``max`` mean open."""

    value = strip_string_wrapper(raw_value)
    if not value.startswith("range(") or not value.endswith(")") or "datetime(" in value:
        return None
    parts = value[6:-1].split(",")
    if len(parts) < 2:
        return None
    return NumericRange(min=_parse_range_part(parts[0]), max=_parse_range_part(parts[1]))


def _format_decimal(value: float) -> str:
    if value == int(value):
        return str(int(value))
    return str(value)


def build_numeric_range_token(value_range: NumericRange) -> str:
    low = f"decimal({_format_decimal(value_range.min)})" if value_range.min is not None else "min"
    high = f"decimal({_format_decimal(value_range.max)})" if value_range.max is not None else "max"
    return f"range({low}, {high})"


def format_bytes(value: float) -> str:
    if value < 1024:
        return f"{math.floor(value + 0.5)} B"
    units = ("KB", "MB", "GB", "TB")
    size = value / 1024
    unit_index = 0
    while size >= 1024 and unit_index < len(units) - 1:
        size /= 1024
        unit_index += 1
    rounded = f"{size:.1f}" if size < 10 else str(math.floor(size + 0.5))
    return f"{rounded} {units[unit_index]}"


def _format_plain_number(value: float) -> str:
    if value == int(value):
        return f"{int(value):,}"
    return f"{value:,.3f}".rstrip("0").rstrip(".")


def _format_currency(value: float, currency: str) -> str:
    code = currency.upper()
    digits = 0 if code in _ZERO_DECIMAL_CURRENCIES else 2
    amount = f"{abs(value):,.{digits}f}"
    sign = "-" if value < 0 else ""
    symbol = _CURRENCY_SYMBOLS.get(code)
    if symbol is None:
        return f"{sign}{code} {amount}"
    return f"{sign}{symbol}{amount}"


def format_numeric_value(value: float, config: FilterConfig | None) -> str:
    fmt = config.range_format if config is not None else "number"
    if fmt == "bytes":
        return format_bytes(value)
    if fmt == "currency":
        return _format_currency(value, config.currency if config is not None else "USD")
    return _format_plain_number(value)


def format_numeric_range(value_range: NumericRange, config: FilterConfig | None) -> str:
    if value_range.min is None and value_range.max is None:
        return ""
    if value_range.min is not None and value_range.max is not None:
        return (
            f"{format_numeric_value(value_range.min, config)} - "
            f"{format_numeric_value(value_range.max, config)}"
        )
    if value_range.min is not None:
        return "> " + format_numeric_value(value_range.min, config)
    return "< " + format_numeric_value(value_range.max, config)  # type: ignore[arg-type]


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed


def parse_date_range_token(raw_value: str) -> tuple[datetime, datetime] | None:
    match = _DATE_RANGE.match(strip_string_wrapper(raw_value).strip())
    if not match:
        return None
    start = _parse_iso(match.group(1))
    end = _parse_iso(match.group(2))
    if start is None or end is None:
        return None
    return start, end


def _to_utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def build_date_range_token(start: datetime, end: datetime) -> str:
    return f'range(datetime("{_to_utc_iso(start)}"), datetime("{_to_utc_iso(end)}"))'


def format_short_date(value: date) -> str:
    return f"{_MONTHS[value.month - 1]} {value.day}, {value.year}"


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        return _parse_iso(value)
    return None


class FilterValueFormatter(ABC):
    """Converts between backend tokens, display labels and URL tokens."""

    id: str = "default"

    @abstractmethod
    async def to_display(self, raw_value: str, config: FilterConfig | None = None) -> str:
        """Backend token -> label for pills and refiner lists."""

    @abstractmethod
    def to_query_token(self, display_value: Any, config: FilterConfig | None = None) -> str:
        """UI selection -> backend refinement token. Empty string means no token."""

    def to_url_token(self, raw_value: str) -> str:
        return encode_url_value(raw_value)

    def from_url_token(self, url_value: str) -> str:
        return decode_url_value(url_value)


class DefaultFilterFormatter(FilterValueFormatter):
    """Pass-through formatter for checkbox, tag box and unknown filter types."""

    def __init__(self, formatter_id: str = "default") -> None:
        self.id = formatter_id

    async def to_display(self, raw_value: str, config: FilterConfig | None = None) -> str:
        return strip_string_wrapper(raw_value)

    def to_query_token(self, display_value: Any, config: FilterConfig | None = None) -> str:
        if display_value is None:
            return ""
        return str(display_value)


class TaxonomyFilterFormatter(FilterValueFormatter):
    """Managed-metadata terms. Displays the full ancestor path of a term.

    The cache holds one term-store lookup per id. Paths are assembled by
    walking parents over those cached records, so concurrent walks never
    wait on each other and a parent cycle stops at the first repeated id.
    """

    id = "taxonomy"

    def __init__(self, lookup: TermLookup | None, cache: LabelCache[TermRecord | None]) -> None:
        self._lookup = lookup
        self._cache = cache

    async def to_display(self, raw_value: str, config: FilterConfig | None = None) -> str:
        stripped = strip_string_wrapper(raw_value)
        embedded = _extract_embedded_label(stripped)
        if embedded:
            return embedded
        guid = extract_guid(stripped)
        if guid is None or self._lookup is None:
            return stripped
        resolved = await self.resolve(guid)
        return resolved.path or resolved.label or stripped

    async def resolve(self, term_id: str) -> TermLabel:
        lookup = self._lookup
        if lookup is None:
            return TermLabel(label=term_id, path=term_id)

        term = await self._record(lookup, term_id)
        if term is _FAILED_TERM:
            return TermLabel(label=UNKNOWN_TERM, path=UNKNOWN_TERM)
        if term is None:
            return TermLabel(label=term_id, path=term_id)

        label = term.label or term_id
        names = [label]
        seen = {term_id.lower()}
        parent_id = term.parent_id
        while parent_id and parent_id.lower() not in seen:
            seen.add(parent_id.lower())
            parent = await self._record(lookup, parent_id)
            if parent is _FAILED_TERM:
                names.append(UNKNOWN_TERM)
                break
            if parent is None:
                names.append(parent_id)
                break
            names.append(parent.label or parent_id)
            parent_id = parent.parent_id
        return TermLabel(label=label, path=" > ".join(reversed(names)))

    async def _record(self, lookup: TermLookup, term_id: str) -> TermRecord | None:
        future = self._cache.get_or_create(term_id.lower(), lambda: self._fetch_term(lookup, term_id))
        return await asyncio.shield(future)

    async def _fetch_term(self, lookup: TermLookup, term_id: str) -> TermRecord | None:
        try:
            return await lookup.get_term(term_id)
        except Exception as exc:
            logger.warning("Taxonomy label resolution failed for %s: %s", term_id, exc)
            return _FAILED_TERM

    def to_query_token(self, display_value: Any, config: FilterConfig | None = None) -> str:
        if isinstance(display_value, str):
            if display_value.startswith(TAXONOMY_PREFIX):
                return display_value
            guid = extract_guid(display_value)
            return TAXONOMY_PREFIX + guid if guid else display_value
        if isinstance(display_value, dict):
            term_id = display_value.get("term_id") or display_value.get("id")
            return TAXONOMY_PREFIX + str(term_id) if term_id else ""
        return ""

    def to_url_token(self, raw_value: str) -> str:
        guid = extract_guid(raw_value)
        return guid if guid else encode_url_value(raw_value)

    def from_url_token(self, url_value: str) -> str:
        if _BARE_GUID.match(url_value):
            return TAXONOMY_PREFIX + url_value
        return decode_url_value(url_value)


class PeopleFilterFormatter(FilterValueFormatter):
    """Claims-encoded principals resolved to display names."""

    id = "people"

    def __init__(self, lookup: ProfileLookup | None, cache: LabelCache[str]) -> None:
        self._lookup = lookup
        self._cache = cache

    async def to_display(self, raw_value: str, config: FilterConfig | None = None) -> str:
        stripped = strip_string_wrapper(raw_value)
        if not stripped.startswith("i:0#.f|") and "|" not in stripped:
            return stripped
        lookup = self._lookup
        if lookup is None:
            return _login_from_claim(stripped)
        future = self._cache.get_or_create(stripped, lambda: self._lookup_name(lookup, stripped))
        return await asyncio.shield(future)

    async def _lookup_name(self, lookup: ProfileLookup, claim: str) -> str:
        try:
            profile = await lookup.get_profile(claim)
        except Exception as exc:
            logger.warning("People profile resolution failed for %s: %s", claim, exc)
            profile = None

        if profile is not None:
            if profile.display_name:
                return profile.display_name
            preferred = profile.properties.get("PreferredName")
            if preferred:
                return preferred
        return _login_from_claim(claim)

    def to_query_token(self, display_value: Any, config: FilterConfig | None = None) -> str:
        if not isinstance(display_value, str) or not display_value:
            return ""
        if "|" in display_value:
            return display_value
        return MEMBERSHIP_CLAIM_PREFIX + display_value


class NumericFilterFormatter(FilterValueFormatter):
    """Slider ranges: ``range(decimal(a), decimal(b))``."""

    id = "slider"

    async def to_display(self, raw_value: str, config: FilterConfig | None = None) -> str:
        parsed = parse_range_token(raw_value)
        if parsed is None:
            return strip_string_wrapper(raw_value)
        return format_numeric_range(parsed, config)

    def to_query_token(self, display_value: Any, config: FilterConfig | None = None) -> str:
        if isinstance(display_value, str):
            return display_value
        if isinstance(display_value, NumericRange):
            low, high = display_value.min, display_value.max
        elif isinstance(display_value, (list, tuple)) and len(display_value) >= 2:
            low, high = display_value[0], display_value[1]
        elif isinstance(display_value, dict):
            low, high = display_value.get("min"), display_value.get("max")
        else:
            return ""
        value_range = NumericRange(_coerce_bound(low), _coerce_bound(high))
        if value_range.min is None and value_range.max is None:
            return ""
        return build_numeric_range_token(value_range)

    def to_url_token(self, raw_value: str) -> str:
        parsed = parse_range_token(raw_value)
        if parsed is None:
            return encode_url_value(raw_value)
        low = _format_decimal(parsed.min) if parsed.min is not None else ""
        high = _format_decimal(parsed.max) if parsed.max is not None else ""
        return f"{low}:{high}"

    def from_url_token(self, url_value: str) -> str:
        parts = url_value.split(":")
        if len(parts) != 2:
            return decode_url_value(url_value)
        low = _parse_number(parts[0]) if parts[0] not in ("", "min") else None
        high = _parse_number(parts[1]) if parts[1] not in ("", "max") else None
        return build_numeric_range_token(NumericRange(low, high))


class DateFilterFormatter(FilterValueFormatter):
    """Date ranges: ``range(datetime("iso"), datetime("iso"))``."""

    id = "daterange"

    async def to_display(self, raw_value: str, config: FilterConfig | None = None) -> str:
        parsed = parse_date_range_token(raw_value)
        if parsed is None:
            return strip_string_wrapper(raw_value)
        start, end = parsed
        return f"{format_short_date(start)} – {format_short_date(end)}"

    def to_query_token(self, display_value: Any, config: FilterConfig | None = None) -> str:
        if isinstance(display_value, str):
            return display_value
        if isinstance(display_value, (list, tuple)) and len(display_value) >= 2:
            start = _coerce_datetime(display_value[0])
            end = _coerce_datetime(display_value[1])
            if start is not None and end is not None:
                return build_date_range_token(start, end)
        return ""


class BooleanFilterFormatter(FilterValueFormatter):
    """Toggle values ``1``/``0`` shown with configurable labels."""

    id = "toggle"

    async def to_display(self, raw_value: str, config: FilterConfig | None = None) -> str:
        cleaned = strip_string_wrapper(raw_value).replace('"', "")
        lowered = cleaned.lower()
        if lowered in ("1", "true"):
            return (config.true_label if config else None) or "Yes"
        if lowered in ("0", "false"):
            return (config.false_label if config else None) or "No"
        return cleaned

    def to_query_token(self, display_value: Any, config: FilterConfig | None = None) -> str:
        if isinstance(display_value, bool):
            return "1" if display_value else "0"
        if not isinstance(display_value, str):
            return ""
        normalized = display_value.replace('"', "").strip().lower()
        true_label = (config.true_label or "").lower() if config else ""
        false_label = (config.false_label or "").lower() if config else ""
        if normalized in ("1", "true", "yes") or (true_label and normalized == true_label):
            return "1"
        if normalized in ("0", "false", "no") or (false_label and normalized == false_label):
            return "0"
        return ""


class FilterValueFormatterSet:
    """Per-session formatters plus the label caches they share.

    Lookup goes through the filter-type registry first, so extensions can
    supply their own formatter; unknown types fall back to the default
    formatter.
    """

    def __init__(
        self,
        registry: Registry[FilterTypeDefinition] | None = None,
        *,
        term_lookup: TermLookup | None = None,
        profile_lookup: ProfileLookup | None = None,
    ) -> None:
        self._registry = registry
        self.term_cache: LabelCache[TermRecord | None] = LabelCache()
        self.people_cache: LabelCache[str] = LabelCache()
        self.default = DefaultFilterFormatter()
        self._builtins: dict[str, FilterValueFormatter] = {
            "default": self.default,
            "checkbox": DefaultFilterFormatter("checkbox"),
            "tagbox": DefaultFilterFormatter("tagbox"),
            "taxonomy": TaxonomyFilterFormatter(term_lookup, self.term_cache),
            "people": PeopleFilterFormatter(profile_lookup, self.people_cache),
            "slider": NumericFilterFormatter(),
            "daterange": DateFilterFormatter(),
            "toggle": BooleanFilterFormatter(),
        }

    def builtins(self) -> list[FilterValueFormatter]:
        return list(self._builtins.values())

    def get(self, filter_type: str | None) -> FilterValueFormatter:
        if not filter_type:
            return self.default
        if self._registry is not None:
            definition = self._registry.get(filter_type)
            if definition is not None and definition.formatter is not None:
                return definition.formatter
        return self._builtins.get(filter_type, self.default)

    def build_active_filter(self, config: FilterConfig, display_value: Any) -> ActiveFilter | None:
        """Turn a UI selection into an active filter, or None when it has no token."""
        token = self.get(config.filter_type).to_query_token(display_value, config)
        if not token:
            return None
        return ActiveFilter(filter_name=config.managed_property, value=token, operator=config.operator)

    async def to_display(self, active_filter: ActiveFilter, config: FilterConfig | None) -> str:
        formatter = self.get(config.filter_type if config else None)
        return await formatter.to_display(active_filter.value, config)

    async def display_labels(
        self,
        filters: Sequence[ActiveFilter],
        configs: Iterable[FilterConfig],
    ) -> list[str]:
        """Resolve labels for every filter concurrently, in input order."""
        by_property = {config.managed_property: config for config in configs}
        return list(
            await asyncio.gather(
                *(self.to_display(item, by_property.get(item.filter_name)) for item in filters)
            )
        )

    def close(self) -> None:
        self.term_cache.cancel_pending()
        self.people_cache.cancel_pending()

