"""Admission pass: move queued entries onto free agent slots.

One invocation runs one bounded pass. Entries are considered in queue
order (priority, then id); an entry is admitted only while capacity
remains and none of its globs overlap an active lock. Admission
dispatches the work, marks the entry in-progress and records its lock.

The pass is meant to be triggered periodically by a single external
scheduler. Two passes running against the same documents at once are not
coordinated beyond the compare-and-swap on the writes.

Locks are never reclaimed here. A unit of work that dies without a
completion signal keeps its lock until it is released by hand.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from issue_dispatch.config import PERSIST_PER_ADMISSION, DispatchConfig
from issue_dispatch.dispatch import Dispatcher
from issue_dispatch.locks import LockTable
from issue_dispatch.models import IN_PROGRESS, QUEUED, QueueEntry, WorkDescriptor, _now_iso
from issue_dispatch.work_queue import QueueStore

logger = logging.getLogger(__name__)


@dataclass
class SchedulerReport:
	"""Summary of one admission pass."""

	capacity: int = 0
	dispatched: list[int] = field(default_factory=list)
	blocked: dict[int, list[int]] = field(default_factory=dict)  # entry id -> lock owners
	deferred: list[int] = field(default_factory=list)  # queued, but no capacity left
	stopped_reason: str = ""  # no_capacity/capacity_exhausted/queue_exhausted


class Scheduler:
	"""Admits queued work up to ``parallel_agents`` concurrent entries."""

	def __init__(
		self,
		config: DispatchConfig,
		queue: QueueStore,
		locks: LockTable,
		dispatcher: Dispatcher,
		persist: bool = True,
		clock: Callable[[], str] = _now_iso,
	) -> None:
		self.config = config
		self.queue = queue
		self.locks = locks
		self.dispatcher = dispatcher
		self.persist = persist
		self.clock = clock

	@property
	def per_admission(self) -> bool:
		return self.config.scheduler.persist_mode == PERSIST_PER_ADMISSION

	def _save(self) -> None:
		if not self.persist:
			return
		self.queue.save()
		self.locks.save()

	async def run_pass(self) -> SchedulerReport:
		"""Run one admission pass and persist the result.

		Raises whatever the dispatcher or the stores raise. With the default
		end-of-pass persistence nothing is written when the pass aborts, even
		for entries whose dispatch already succeeded.
		"""
		self.queue.load()
		self.locks.load()
		report = SchedulerReport()

		in_progress = len(self.queue.in_progress())
		report.capacity = max(self.config.parallel_agents - in_progress, 0)
		if report.capacity == 0:
			report.deferred = [e.id for e in self.queue.queued()]
			report.stopped_reason = "no_capacity"
			logger.info(
				"No scheduler capacity available (%d in progress, limit %d); %d queued deferred",
				in_progress, self.config.parallel_agents, len(report.deferred),
			)
			return report

		try:
			await self._scan(report)
		except Exception:
			if report.dispatched and not self.per_admission:
				# Work for these entries is running downstream, but no lock for it
				# will be persisted.
				logger.warning(
					"Pass aborted after dispatching %s; their in-progress state and locks were not persisted",
					", ".join(f"#{i}" for i in report.dispatched),
				)
			raise

		if report.dispatched:
			logger.info("Scheduler dispatched issues: %s", ", ".join(str(i) for i in report.dispatched))
		else:
			logger.info("Scheduler did not dispatch any items.")

		if not self.per_admission:
			self._save()
		return report

	async def _scan(self, report: SchedulerReport) -> None:
		remaining = report.capacity
		for entry in self.queue.entries:
			if entry.status != QUEUED:
				continue
			if remaining <= 0:
				report.deferred.append(entry.id)
				logger.info("Issue #%d deferred: scheduler capacity exhausted", entry.id)
				continue

			conflicts = self.locks.conflicts_for(entry.files)
			if conflicts:
				owners = [lock.owner for lock in conflicts]
				report.blocked[entry.id] = owners
				logger.info(
					"Issue #%d is blocked by existing locks held by %s",
					entry.id, ", ".join(f"#{o}" for o in owners),
				)
				continue

			await self._admit(entry)
			report.dispatched.append(entry.id)
			remaining -= 1

		report.stopped_reason = "capacity_exhausted" if remaining <= 0 else "queue_exhausted"

	async def _admit(self, entry: QueueEntry) -> None:
		work = WorkDescriptor(id=entry.id, component=entry.component, files=tuple(entry.files))
		if not self.per_admission:
			await self.dispatcher.dispatch(work)
			self._mark_started(entry)
			return

		# Record the admission first so a crash after dispatch leaves a lock.
		self._mark_started(entry)
		self._save()
		try:
			await self.dispatcher.dispatch(work)
		except Exception:
			logger.warning("Dispatch of #%d failed; reverting its admission", entry.id)
			entry.status = QUEUED
			entry.started_at = None
			self.locks.release(entry.id)
			self._save()
			raise

	def _mark_started(self, entry: QueueEntry) -> None:
		entry.status = IN_PROGRESS
		entry.started_at = self.clock()
		self.locks.acquire(
			entry.id, entry.files,
			agent=self.config.dispatch.agent,
			started_at=entry.started_at,
		)
		logger.debug("Issue #%d in progress since %s", entry.id, entry.started_at)
