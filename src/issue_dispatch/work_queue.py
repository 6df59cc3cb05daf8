"""Priority-ordered work queue backed by a document store."""

from __future__ import annotations

import logging

from issue_dispatch.models import IN_PROGRESS, QUEUED, QueueEntry
from issue_dispatch.store import DocumentStore, StoreError

logger = logging.getLogger(__name__)

QUEUE_KEY = "queue"


def sort_entries(entries: list[QueueEntry]) -> list[QueueEntry]:
	"""Sort in place by ascending (priority, id) and return the list."""
	entries.sort(key=lambda e: e.sort_key)
	return entries


class QueueStore:
	"""Ordered collection of queue entries, one per issue id."""

	def __init__(self, store: DocumentStore, key: str = QUEUE_KEY) -> None:
		self.store = store
		self.key = key
		self.entries: list[QueueEntry] = []
		self.version: str | None = None

	def load(self) -> list[QueueEntry]:
		doc = self.store.get(self.key)
		raw = doc.data if isinstance(doc.data, list) else []
		try:
			self.entries = [QueueEntry.from_dict(item) for item in raw]
		except ValueError as exc:
			raise StoreError(f"Invalid queue document {self.key!r}: {exc}") from exc
		self.version = doc.version
		return self.entries

	def save(self, check_version: bool = True) -> None:
		expected = self.version if check_version else None
		self.version = self.store.put(self.key, [e.to_dict() for e in self.entries], expected)

	def get(self, entry_id: int) -> QueueEntry | None:
		for entry in self.entries:
			if entry.id == entry_id:
				return entry
		return None

	def upsert(self, entry: QueueEntry) -> bool:
		"""Replace the entry with the same id, or append it.

		Returns True if an existing entry was replaced.
		"""
		for i, current in enumerate(self.entries):
			if current.id == entry.id:
				self.entries[i] = entry
				return True
		self.entries.append(entry)
		return False

	def sort(self) -> None:
		sort_entries(self.entries)

	def in_progress(self) -> list[QueueEntry]:
		return [e for e in self.entries if e.status == IN_PROGRESS]

	def queued(self) -> list[QueueEntry]:
		return [e for e in self.entries if e.status == QUEUED]
