"""Tests for the scheduler admission pass."""

from __future__ import annotations

import logging
from typing import Any

import pytest

from issue_dispatch.config import PERSIST_PER_ADMISSION, DispatchConfig, SchedulerConfig
from issue_dispatch.github import GitHubAPIError
from issue_dispatch.locks import LockTable
from issue_dispatch.models import WorkDescriptor
from issue_dispatch.scheduler import Scheduler
from issue_dispatch.store import MemoryStore, StaleWriteError
from issue_dispatch.work_queue import QueueStore

from conftest import FakeDispatcher

NOW = "2026-10-18T12:00:00+00:00"

JDBC = ["connectors/jdbc/**"]


def _item(number: int, files: list[str], priority: int = 1000, status: str = "queued", **extra: Any) -> dict[str, Any]:
	item: dict[str, Any] = {
		"number": number,
		"title": f"Issue {number}",
		"component": "jdbc",
		"files": files,
		"labels": [],
		"priority": priority,
		"status": status,
	}
	item.update(extra)
	return item


def _lock(owner: int, files: list[str]) -> dict[str, Any]:
	return {"issue": owner, "files": files, "agent": "human", "pr": None, "started_at": NOW}


def _scheduler(
	store: MemoryStore,
	dispatcher: FakeDispatcher,
	parallel: int = 1,
	persist_mode: str = "end_of_pass",
) -> Scheduler:
	config = DispatchConfig(parallel_agents=parallel, scheduler=SchedulerConfig(persist_mode=persist_mode))
	return Scheduler(config, QueueStore(store), LockTable(store), dispatcher, clock=lambda: NOW)


def _statuses(store: MemoryStore) -> dict[int, str]:
	return {d["number"]: d["status"] for d in store.get("queue").data}


def _lock_owners(store: MemoryStore) -> list[int]:
	return [d["issue"] for d in store.get("locks").data or []]


class TestScenarios:
	@pytest.mark.asyncio
	async def test_admits_queued_entry(self, dispatcher: FakeDispatcher) -> None:
		"""Queued entry with free capacity and no locks is dispatched and locked."""
		store = MemoryStore({"queue": [_item(10, JDBC, priority=450)], "locks": []})
		report = await _scheduler(store, dispatcher).run_pass()

		assert report.dispatched == [10]
		assert dispatcher.calls == [WorkDescriptor(id=10, component="jdbc", files=("connectors/jdbc/**",))]
		entry = store.get("queue").data[0]
		assert entry["status"] == "in-progress"
		assert entry["started_at"] == NOW
		assert store.get("locks").data == [_lock(10, JDBC)]

	@pytest.mark.asyncio
	async def test_overlapping_entry_stays_blocked(self, dispatcher: FakeDispatcher) -> None:
		"""Entry whose file sits under a held glob is not admitted."""
		store = MemoryStore({
			"queue": [
				_item(10, JDBC, priority=450, status="in-progress", started_at=NOW),
				_item(11, ["connectors/jdbc/config.yaml"]),
			],
			"locks": [_lock(10, JDBC)],
		})
		report = await _scheduler(store, dispatcher, parallel=2).run_pass()

		assert report.blocked == {11: [10]}
		assert report.dispatched == []
		assert dispatcher.calls == []
		assert _statuses(store)[11] == "queued"
		assert _lock_owners(store) == [10]

	@pytest.mark.asyncio
	async def test_brace_lock_blocks_matching_file(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore({
			"queue": [
				_item(10, ["web/**/*.{ts,tsx}"], priority=450, status="in-progress", started_at=NOW),
				_item(11, ["web/app/page.tsx"]),
			],
			"locks": [_lock(10, ["web/**/*.{ts,tsx}"])],
		})
		report = await _scheduler(store, dispatcher, parallel=2).run_pass()

		assert report.dispatched == []
		assert report.blocked == {11: [10]}
		assert _statuses(store)[11] == "queued"

	@pytest.mark.asyncio
	async def test_brace_lock_admits_disjoint_file(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore({
			"queue": [
				_item(10, ["web/**/*.{ts,tsx}"], priority=450, status="in-progress", started_at=NOW),
				_item(11, ["web/app/globals.css"]),
			],
			"locks": [_lock(10, ["web/**/*.{ts,tsx}"])],
		})
		report = await _scheduler(store, dispatcher, parallel=2).run_pass()

		assert report.dispatched == [11]
		assert _lock_owners(store) == [10, 11]

	@pytest.mark.asyncio
	async def test_no_capacity_is_distinct_from_blocked(
		self, dispatcher: FakeDispatcher, caplog: pytest.LogCaptureFixture,
	) -> None:
		"""Disjoint entry waits for capacity, and says so in the log."""
		store = MemoryStore({
			"queue": [
				_item(10, JDBC, priority=450, status="in-progress", started_at=NOW),
				_item(12, ["connectors/s3/**"]),
			],
			"locks": [_lock(10, JDBC)],
		})
		before = store.get("queue").version
		with caplog.at_level(logging.INFO, logger="issue_dispatch.scheduler"):
			report = await _scheduler(store, dispatcher).run_pass()

		assert report.stopped_reason == "no_capacity"
		assert report.deferred == [12]
		assert report.blocked == {}
		assert dispatcher.calls == []
		assert store.get("queue").version == before
		assert "No scheduler capacity available" in caplog.text
		assert "blocked" not in caplog.text


class TestAdmission:
	@pytest.mark.asyncio
	async def test_capacity_bound(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore({"queue": [
			_item(1, ["a/**"]),
			_item(2, ["b/**"]),
			_item(3, ["c/**"]),
			_item(4, ["d/**"]),
		]})
		report = await _scheduler(store, dispatcher, parallel=2).run_pass()

		assert report.capacity == 2
		assert report.dispatched == [1, 2]
		assert report.deferred == [3, 4]
		assert report.stopped_reason == "capacity_exhausted"
		assert list(_statuses(store).values()).count("in-progress") == 2

	@pytest.mark.asyncio
	async def test_capacity_counts_existing_in_progress(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore({
			"queue": [
				_item(1, ["a/**"], status="in-progress", started_at=NOW),
				_item(2, ["b/**"]),
				_item(3, ["c/**"]),
			],
			"locks": [_lock(1, ["a/**"])],
		})
		report = await _scheduler(store, dispatcher, parallel=2).run_pass()
		assert report.capacity == 1
		assert report.dispatched == [2]

	@pytest.mark.asyncio
	async def test_over_limit_in_progress_gives_zero_capacity(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore({"queue": [
			_item(1, ["a/**"], status="in-progress"),
			_item(2, ["b/**"], status="in-progress"),
			_item(3, ["c/**"]),
		]})
		report = await _scheduler(store, dispatcher, parallel=1).run_pass()
		assert report.capacity == 0
		assert dispatcher.calls == []

	@pytest.mark.asyncio
	async def test_stored_order_is_admission_order(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore({"queue": [
			_item(4, ["x/**"], priority=450),
			_item(2, ["y/**"], priority=1000),
			_item(3, ["z/**"], priority=1000),
		]})
		await _scheduler(store, dispatcher, parallel=3).run_pass()
		assert [c.id for c in dispatcher.calls] == [4, 2, 3]

	@pytest.mark.asyncio
	async def test_blocked_entry_does_not_consume_capacity(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore({
			"queue": [
				_item(5, ["connectors/jdbc/pool.java"], priority=450),
				_item(6, ["connectors/s3/**"], priority=1000),
			],
			"locks": [_lock(99, JDBC)],
		})
		report = await _scheduler(store, dispatcher, parallel=2).run_pass()
		assert report.blocked == {5: [99]}
		assert report.dispatched == [6]
		assert report.stopped_reason == "queue_exhausted"

	@pytest.mark.asyncio
	async def test_entries_admitted_in_same_pass_lock_each_other(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore({"queue": [
			_item(1, JDBC, priority=450),
			_item(2, ["connectors/jdbc/config.yaml"], priority=600),
		]})
		report = await _scheduler(store, dispatcher, parallel=2).run_pass()
		assert report.dispatched == [1]
		assert report.blocked == {2: [1]}

	@pytest.mark.asyncio
	async def test_skips_non_queued(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore({"queue": [
			_item(1, ["a/**"], status="done"),
			_item(2, ["b/**"], status="failed"),
		]})
		report = await _scheduler(store, dispatcher, parallel=2).run_pass()
		assert report.dispatched == []
		assert report.stopped_reason == "queue_exhausted"

	@pytest.mark.asyncio
	async def test_empty_state_bootstraps(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore()
		report = await _scheduler(store, dispatcher).run_pass()
		assert report.dispatched == []
		assert store.get("queue").data == []
		assert store.get("locks").data == []

	@pytest.mark.asyncio
	async def test_agent_from_config(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore({"queue": [_item(1, ["a/**"])]})
		scheduler = _scheduler(store, dispatcher)
		scheduler.config.dispatch.agent = "codex"
		await scheduler.run_pass()
		assert store.get("locks").data[0]["agent"] == "codex"

	@pytest.mark.asyncio
	async def test_persist_false_leaves_store_untouched(self, dispatcher: FakeDispatcher) -> None:
		store = MemoryStore({"queue": [_item(1, ["a/**"])]})
		scheduler = _scheduler(store, dispatcher)
		scheduler.persist = False
		report = await scheduler.run_pass()
		assert report.dispatched == [1]
		assert _statuses(store) == {1: "queued"}
		assert store.get("locks").data is None


class TestFailures:
	@pytest.mark.asyncio
	async def test_dispatch_failure_aborts_without_writes(self, caplog: pytest.LogCaptureFixture) -> None:
		"""End-of-pass mode: nothing persisted, earlier dispatch becomes an orphan."""
		dispatcher = FakeDispatcher(fail_on={2})
		store = MemoryStore({"queue": [_item(1, ["a/**"]), _item(2, ["b/**"])]})

		with caplog.at_level(logging.WARNING, logger="issue_dispatch.scheduler"):
			with pytest.raises(GitHubAPIError):
				await _scheduler(store, dispatcher, parallel=2).run_pass()

		assert [c.id for c in dispatcher.calls] == [1]
		assert _statuses(store) == {1: "queued", 2: "queued"}
		assert store.get("locks").data is None
		assert "#1" in caplog.text
		assert "not persisted" in caplog.text

	@pytest.mark.asyncio
	async def test_per_admission_persists_before_dispatch_and_reverts_failure(self) -> None:
		dispatcher = FakeDispatcher(fail_on={2})
		store = MemoryStore({"queue": [_item(1, ["a/**"]), _item(2, ["b/**"])]})

		with pytest.raises(GitHubAPIError):
			await _scheduler(store, dispatcher, parallel=2, persist_mode=PERSIST_PER_ADMISSION).run_pass()

		assert _statuses(store) == {1: "in-progress", 2: "queued"}
		assert _lock_owners(store) == [1]
		assert "started_at" not in store.get("queue").data[1]

	@pytest.mark.asyncio
	async def test_per_admission_lock_visible_during_dispatch(self) -> None:
		store = MemoryStore({"queue": [_item(1, ["a/**"])]})
		seen: list[list[int]] = []

		class _Inspecting(FakeDispatcher):
			async def dispatch(self, work: WorkDescriptor) -> None:
				seen.append(_lock_owners(store))
				await super().dispatch(work)

		await _scheduler(store, _Inspecting(), persist_mode=PERSIST_PER_ADMISSION).run_pass()
		assert seen == [[1]]
		assert _statuses(store) == {1: "in-progress"}

	@pytest.mark.asyncio
	async def test_concurrent_write_is_detected(self) -> None:
		store = MemoryStore({"queue": [_item(1, ["a/**"])], "locks": []})

		class _Racing(FakeDispatcher):
			async def dispatch(self, work: WorkDescriptor) -> None:
				await super().dispatch(work)
				# another pass finishes first
				store.put("queue", [_item(1, ["a/**"], status="in-progress")])

		with pytest.raises(StaleWriteError):
			await _scheduler(store, _Racing()).run_pass()


class TestProperties:
	@pytest.mark.asyncio
	@pytest.mark.parametrize("parallel", [0, 1, 2, 3, 5])
	async def test_capacity_bound_holds(self, parallel: int) -> None:
		queue = [_item(i, [f"dir{i}/**"]) for i in range(1, 5)]
		queue.insert(0, _item(100, ["busy/**"], priority=0, status="in-progress"))
		store = MemoryStore({"queue": queue, "locks": [_lock(100, ["busy/**"])]})
		before = 1

		await _scheduler(store, FakeDispatcher(), parallel=parallel).run_pass()
		after = list(_statuses(store).values()).count("in-progress")
		assert after - before <= max(parallel - before, 0)

	@pytest.mark.asyncio
	async def test_no_false_admission(self) -> None:
		locked = ["connectors/**"]
		queue = [
			_item(1, ["connectors/jdbc/a.java"]),
			_item(2, ["connectors/s3/b.java", "docs/**"]),
			_item(3, ["docs/readme.md"]),
		]
		store = MemoryStore({"queue": queue, "locks": [_lock(50, locked)]})
		report = await _scheduler(store, FakeDispatcher(), parallel=5).run_pass()

		statuses = _statuses(store)
		assert statuses[1] == "queued"
		assert statuses[2] == "queued"
		assert report.dispatched == [3]
