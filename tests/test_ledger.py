"""Tests for the append-only execution ledger."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from opskit.manager.ledger import ExecutionLedger
from opskit.models.execution import TerminationReason
from opskit.models.history import ExecutionHistoryEntry, HistoryFilter

BASE = datetime(2024, 6, 1, 9, 0, tzinfo=UTC)


def _entry(
    tool_id: str = "cleanup",
    minutes: int = 0,
    success: bool = True,
    reason: TerminationReason = TerminationReason.COMPLETED,
) -> ExecutionHistoryEntry:
    start = BASE + timedelta(minutes=minutes)
    return ExecutionHistoryEntry(
        correlation_id=f"{tool_id}-{minutes}",
        tool_id=tool_id,
        tool_name=tool_id.title(),
        machine="WS-042",
        user="ops",
        success=success,
        exit_code=0 if success else 1,
        start_time=start,
        end_time=start + timedelta(seconds=3),
        duration_ms=3000,
        termination_reason=reason,
    )


class TestRecord:
    """Tests for appending entries."""

    @pytest.mark.asyncio
    async def test_record_and_query(self, ledger):
        entry = _entry()

        await ledger.record(entry)

        assert await ledger.query() == [entry]

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, ledger):
        entry = _entry()
        await ledger.record(entry)

        with pytest.raises(ValueError):
            await ledger.record(entry)

        assert len(await ledger.query()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_writers_do_not_interleave(self, ledger):
        entries = [_entry(minutes=i) for i in range(25)]

        await asyncio.gather(*(ledger.record(e) for e in entries))

        lines = ledger.path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 25
        assert {e.id for e in await ledger.query()} == {e.id for e in entries}

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path):
        path = tmp_path / "history.jsonl"
        entry = _entry()
        await ExecutionLedger(path).record(entry)

        reopened = ExecutionLedger(path)

        assert await reopened.get(entry.id) == entry
        with pytest.raises(ValueError):
            await reopened.record(entry)

    @pytest.mark.asyncio
    async def test_torn_line_skipped(self, ledger):
        await ledger.record(_entry())
        with open(ledger.path, "a", encoding="utf-8") as f:
            f.write('{"id": "half-writ')

        assert len(await ledger.query()) == 1

    @pytest.mark.asyncio
    async def test_record_after_torn_line_is_kept(self, ledger):
        first, second = _entry(), _entry(minutes=1)
        await ledger.record(first)
        with open(ledger.path, "a", encoding="utf-8") as f:
            f.write('{"id": "half-writ')

        await ledger.record(second)

        assert await ledger.get(second.id) == second
        assert {e.id for e in await ledger.query()} == {first.id, second.id}

    @pytest.mark.asyncio
    async def test_torn_multibyte_character(self, tmp_path):
        path = tmp_path / "history.jsonl"
        entry = _entry()
        path.write_bytes('{"tool_name": "caf'.encode("utf-8") + "é".encode("utf-8")[:1])
        ledger = ExecutionLedger(path)

        assert await ledger.query() == []

        await ledger.record(entry)

        assert await ledger.query() == [entry]


class TestQuery:
    """Tests for filtering and ordering."""

    @pytest.mark.asyncio
    async def test_newest_first_with_limit(self, ledger):
        for minutes in (5, 1, 9):
            await ledger.record(_entry(minutes=minutes))

        results = await ledger.query(HistoryFilter(limit=2))

        assert [r.start_time.minute for r in results] == [9, 5]

    @pytest.mark.asyncio
    async def test_filters(self, ledger):
        await ledger.record(_entry("cleanup", 0))
        await ledger.record(_entry("cleanup", 10, success=False))
        await ledger.record(_entry("report", 20, reason=TerminationReason.CANCELLED, success=False))

        assert len(await ledger.query(HistoryFilter(tool_id="cleanup"))) == 2
        assert len(await ledger.query(HistoryFilter(success=False))) == 2
        cancelled = await ledger.query(HistoryFilter(termination_reason=TerminationReason.CANCELLED))
        assert [e.tool_id for e in cancelled] == ["report"]
        window = await ledger.query(HistoryFilter(
            since=BASE + timedelta(minutes=5),
            until=BASE + timedelta(minutes=15),
        ))
        assert [e.start_time.minute for e in window] == [10]

    @pytest.mark.asyncio
    async def test_empty_ledger(self, ledger):
        assert await ledger.query() == []
        assert await ledger.get("nope") is None
        assert await ledger.success_rate() == 0.0


class TestAggregates:
    """Tests for usage statistics."""

    @pytest.mark.asyncio
    async def test_most_used(self, ledger):
        await ledger.record(_entry("cleanup", 0))
        await ledger.record(_entry("cleanup", 1, success=False))
        await ledger.record(_entry("report", 2))

        usage = await ledger.most_used(limit=1)

        assert len(usage) == 1
        assert usage[0].tool_id == "cleanup"
        assert usage[0].runs == 2
        assert usage[0].success_rate == 0.5

    @pytest.mark.asyncio
    async def test_success_rate(self, ledger):
        await ledger.record(_entry("cleanup", 0))
        await ledger.record(_entry("cleanup", 1, success=False))
        await ledger.record(_entry("report", 2))

        assert await ledger.success_rate() == pytest.approx(2 / 3)
        assert await ledger.success_rate("report") == 1.0
