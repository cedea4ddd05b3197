"""Append-only token usage records and their stores."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
import json
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterable
    import os


@dataclass(frozen=True)
class TokenUsageRecord:
    """One accounting entry per successful LLM call with usage."""

    provider: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float
    tool_calls: int = 0
    user_id: str | None = None
    conversation_id: str | None = None
    endpoint: str = "agent/chat"
    cached: bool = False
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


@dataclass(frozen=True)
class UsageTotals:
    """Aggregated usage for one (provider, model) pair."""

    calls: int
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float


@runtime_checkable
class UsageStore(Protocol):
    """Protocol for persisting usage records."""

    async def record(self, entry: TokenUsageRecord) -> None:
        """Append one record."""
        ...


class InMemoryUsageStore:
    """Keeps records in a list; useful for tests and single-run tools."""

    def __init__(self) -> None:
        self.records: list[TokenUsageRecord] = []

    async def record(self, entry: TokenUsageRecord) -> None:
        self.records.append(entry)


class JSONLinesUsageStore:
    """Appends one JSON object per line to a file."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        """Initialize the store pointing at a JSONL file path."""
        self._path = Path(path)
        self._lock = asyncio.Lock()

    async def record(self, entry: TokenUsageRecord) -> None:
        line = json.dumps(asdict(entry), sort_keys=True)
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    def read_all(self) -> list[TokenUsageRecord]:
        """Load every record; malformed lines are skipped."""
        if not self._path.exists():
            return []
        records: list[TokenUsageRecord] = []
        for raw in self._path.read_text(encoding="utf-8").splitlines():
            if not raw.strip():
                continue
            try:
                records.append(TokenUsageRecord(**json.loads(raw)))
            except (json.JSONDecodeError, TypeError):
                continue
        return records


def summarize(records: Iterable[TokenUsageRecord]) -> dict[tuple[str, str], UsageTotals]:
    """Aggregate records per (provider, model)."""
    acc: dict[tuple[str, str], list[float]] = defaultdict(lambda: [0, 0, 0, 0, 0.0])
    for r in records:
        bucket = acc[(r.provider, r.model)]
        bucket[0] += 1
        bucket[1] += r.prompt_tokens
        bucket[2] += r.completion_tokens
        bucket[3] += r.total_tokens
        bucket[4] += r.cost_usd
    return {
        key: UsageTotals(
            calls=int(v[0]),
            prompt_tokens=int(v[1]),
            completion_tokens=int(v[2]),
            total_tokens=int(v[3]),
            cost_usd=float(v[4]),
        )
        for key, v in acc.items()
    }
