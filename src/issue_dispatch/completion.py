"""Completion and manual unlock of dispatched work.

Finishing a unit of work is the only thing that releases its lock. These
helpers keep the queue and lock documents consistent: an in-progress
entry always has exactly one lock, and a lock only exists for an
in-progress entry.
"""

from __future__ import annotations

import logging
from collections import Counter

from issue_dispatch.locks import LockTable
from issue_dispatch.models import IN_PROGRESS, QUEUED, TERMINAL_STATUSES, LockEntry, QueueEntry
from issue_dispatch.work_queue import QueueStore

logger = logging.getLogger(__name__)


class CompletionError(Exception):
	"""The requested transition is not valid for the entry."""


def complete(queue: QueueStore, locks: LockTable, entry_id: int, status: str) -> QueueEntry:
	"""Mark an entry done or failed and release its lock."""
	if status not in TERMINAL_STATUSES:
		raise CompletionError(f"Completion status must be one of {', '.join(TERMINAL_STATUSES)}: {status}")
	queue.load()
	locks.load()
	entry = queue.get(entry_id)
	if entry is None:
		raise CompletionError(f"No queue entry for #{entry_id}")

	previous = entry.status
	entry.status = status
	released = locks.release(entry_id)
	queue.save()
	locks.save()
	logger.info(
		"Issue #%d %s -> %s%s", entry_id, previous, status,
		"" if released else " (no lock was held)",
	)
	return entry


def release(queue: QueueStore, locks: LockTable, entry_id: int) -> QueueEntry | None:
	"""Remove an entry's lock by hand and put in-progress work back in the queue.

	Returns the requeued entry, or None if the entry was not in progress.
	"""
	queue.load()
	locks.load()
	released = locks.release(entry_id)
	entry = queue.get(entry_id)
	requeued = None
	if entry is not None and entry.status == IN_PROGRESS:
		entry.status = QUEUED
		entry.started_at = None
		requeued = entry
	if not released and requeued is None:
		logger.info("Nothing to unlock for #%d", entry_id)
		return None
	queue.save()
	locks.save()
	if requeued is not None:
		logger.info("Issue #%d unlocked and requeued", entry_id)
	return requeued


def check_invariants(entries: list[QueueEntry], locks: list[LockEntry]) -> list[str]:
	"""Return a description of every consistency violation found."""
	problems: list[str] = []

	for entry_id, count in Counter(e.id for e in entries).items():
		if count > 1:
			problems.append(f"#{entry_id} appears {count} times in the queue")

	for a, b in zip(entries, entries[1:]):
		if a.sort_key > b.sort_key:
			problems.append(f"queue out of order: #{a.id} (priority {a.priority}) before #{b.id} (priority {b.priority})")

	owners = Counter(lock.owner for lock in locks)
	for owner, count in owners.items():
		if count > 1:
			problems.append(f"#{owner} holds {count} locks")

	status_by_id = {e.id: e.status for e in entries}
	for entry in entries:
		if entry.status == IN_PROGRESS and entry.id not in owners:
			problems.append(f"#{entry.id} is in progress without a lock")
	for owner in owners:
		if status_by_id.get(owner) != IN_PROGRESS:
			problems.append(f"lock held by #{owner} whose entry is {status_by_id.get(owner, 'missing')}")

	return problems
