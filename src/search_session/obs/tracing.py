"""Search tracing and latency accounting."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(slots=True)
class SearchTrace:
    trace_id: str
    timestamp_utc: str
    session_id: str
    provider_id: str
    query_text: str
    compiled_query: str
    refinement_filters: list[str]
    vertical: str
    page: int
    total_count: int
    promoted_count: int
    latency_ms: float
    cancelled: bool = False
    error: str | None = None
    within_target: bool = True
    tags: dict[str, str] = field(default_factory=dict)


class SearchTraceStore:
    """In-memory trace storage for search executions.

    Keeps at most ``max_records`` traces; the oldest are evicted first.
    """

    def __init__(self, *, max_records: int = 1000, target_latency_ms: float = 2000.0) -> None:
        self._records: dict[str, SearchTrace] = {}
        self._max_records = max_records
        self._target_latency_ms = target_latency_ms

    def create_record(
        self,
        *,
        session_id: str,
        provider_id: str,
        query_text: str,
        compiled_query: str,
        refinement_filters: list[str],
        vertical: str,
        page: int,
        total_count: int,
        promoted_count: int,
        latency_ms: float,
        cancelled: bool = False,
        error: str | None = None,
    ) -> SearchTrace:
        record = SearchTrace(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            session_id=session_id,
            provider_id=provider_id,
            query_text=query_text,
            compiled_query=compiled_query,
            refinement_filters=refinement_filters,
            vertical=vertical,
            page=page,
            total_count=total_count,
            promoted_count=promoted_count,
            latency_ms=latency_ms,
            cancelled=cancelled,
            error=error,
            within_target=latency_ms <= self._target_latency_ms,
        )
        self._records[record.trace_id] = record
        while len(self._records) > self._max_records:
            del self._records[next(iter(self._records))]
        return record

    def get(self, trace_id: str) -> SearchTrace:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20, session_id: str | None = None) -> list[SearchTrace]:
        records = list(self._records.values())
        if session_id is not None:
            records = [record for record in records if record.session_id == session_id]
        return records[-limit:] if limit > 0 else []

    def __len__(self) -> int:
        return len(self._records)

    def summary(self) -> dict[str, float | int]:
        """Aggregate search metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_searches": 0,
                "completed_searches": 0,
                "cancelled_searches": 0,
                "failed_searches": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "within_target_ratio": 0.0,
                "avg_result_count": 0.0,
            }

        completed = [r for r in records if not r.cancelled and r.error is None]
        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        within_target = sum(1 for record in records if record.within_target)
        avg_results = (
            sum(record.total_count for record in completed) / len(completed) if completed else 0.0
        )

        return {
            "total_searches": total,
            "completed_searches": len(completed),
            "cancelled_searches": sum(1 for record in records if record.cancelled),
            "failed_searches": sum(1 for record in records if record.error is not None),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "within_target_ratio": within_target / total,
            "avg_result_count": avg_results,
        }


class Timer:
    """Context timer used around search execution."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
