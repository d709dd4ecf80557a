"""Execution ledger - append-only record of every attempted execution.

Entries are stored one JSON object per line. Writers are serialised by a
single lock; readers never take it and skip a torn trailing line.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from opskit.models.history import ExecutionHistoryEntry, HistoryFilter, ToolUsage

logger = logging.getLogger(__name__)


class ExecutionLedger:
    """Stores and returns raw execution history entries."""

    def __init__(self, path: Path) -> None:
        """Initialize the ledger.

        Args:
            path: JSONL file holding the history (created on first write)
        """
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._recorded_ids: set[str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    async def record(self, entry: ExecutionHistoryEntry) -> None:
        """Append one entry.

        Raises:
            ValueError: If an entry with the same id was already recorded
            OSError: If the history file cannot be written
        """
        async with self._lock:
            if self._recorded_ids is None:
                existing = await asyncio.to_thread(self._read_all)
                self._recorded_ids = {e.id for e in existing}

            if entry.id in self._recorded_ids:
                raise ValueError(f"History entry {entry.id} already recorded")

            await asyncio.to_thread(self._append, entry.model_dump_json() + "\n")
            self._recorded_ids.add(entry.id)

        logger.debug(
            f"Recorded execution {entry.correlation_id} of {entry.tool_id}: "
            f"{entry.termination_reason.value}"
        )

    async def query(self, filter: HistoryFilter | None = None) -> list[ExecutionHistoryEntry]:
        """Return matching entries, newest first."""
        criteria = filter or HistoryFilter()
        entries = await asyncio.to_thread(self._read_all)

        matched = [e for e in entries if criteria.matches(e)]
        matched.sort(key=lambda e: e.start_time, reverse=True)
        if criteria.limit is not None:
            matched = matched[:criteria.limit]
        return matched

    async def get(self, entry_id: str) -> ExecutionHistoryEntry | None:
        """Look up a single entry by id."""
        for entry in await asyncio.to_thread(self._read_all):
            if entry.id == entry_id:
                return entry
        return None

    async def most_used(self, limit: int = 5) -> list[ToolUsage]:
        """Tools ordered by number of runs (most recent run breaks ties)."""
        usage: dict[str, ToolUsage] = {}
        for entry in await asyncio.to_thread(self._read_all):
            stats = usage.setdefault(
                entry.tool_id,
                ToolUsage(tool_id=entry.tool_id, tool_name=entry.tool_name),
            )
            stats.runs += 1
            if entry.success:
                stats.successes += 1
            if stats.last_run is None or entry.start_time > stats.last_run:
                stats.last_run = entry.start_time
                stats.tool_name = entry.tool_name

        ranked = sorted(
            usage.values(),
            key=lambda u: (u.runs, u.last_run.timestamp() if u.last_run else 0.0),
            reverse=True,
        )
        return ranked[:limit]

    async def success_rate(self, tool_id: str | None = None) -> float:
        """Fraction of successful runs, overall or for one tool (0.0 if none)."""
        entries = await self.query(HistoryFilter(tool_id=tool_id))
        if not entries:
            return 0.0
        return sum(1 for e in entries if e.success) / len(entries)

    def _append(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = line.encode("utf-8")
        with open(self._path, "a+b") as f:
            # Terminate a torn trailing line so it cannot swallow this entry
            if f.seek(0, os.SEEK_END) > 0:
                f.seek(-1, os.SEEK_END)
                if f.read(1) != b"\n":
                    data = b"\n" + data
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

    def _read_all(self) -> list[ExecutionHistoryEntry]:
        if not self._path.exists():
            return []

        entries = []
        with open(self._path, "rb") as f:
            for line_number, raw in enumerate(f, start=1):
                try:
                    line = raw.decode("utf-8").strip()
                except UnicodeDecodeError:
                    logger.warning(f"Skipping undecodable history line {line_number} in {self._path}")
                    continue
                if not line:
                    continue
                try:
                    entries.append(ExecutionHistoryEntry.model_validate_json(line))
                except ValidationError:
                    logger.warning(f"Skipping unreadable history line {line_number} in {self._path}")
        return entries
