"""Shared pytest fixtures and fakes for issue-dispatch tests."""

from __future__ import annotations

import pytest

from issue_dispatch.config import DispatchConfig
from issue_dispatch.dispatch import Dispatcher
from issue_dispatch.github import GitHubAPIError, IssueTracker
from issue_dispatch.locks import LockTable
from issue_dispatch.models import WorkDescriptor, WorkRequest
from issue_dispatch.store import MemoryStore
from issue_dispatch.work_queue import QueueStore


class FakeDispatcher(Dispatcher):
	"""Records every payload; optionally fails on chosen ids."""

	def __init__(self, fail_on: set[int] | None = None) -> None:
		self.calls: list[WorkDescriptor] = []
		self.fail_on = fail_on or set()

	async def dispatch(self, work: WorkDescriptor) -> None:
		if work.id in self.fail_on:
			raise GitHubAPIError(422, "Unprocessable Entity", '{"message": "No ref found"}')
		self.calls.append(work)


class FakeTracker(IssueTracker):
	"""In-memory issue tracker capturing labels and comments."""

	def __init__(self) -> None:
		self.labels: dict[int, list[str]] = {}
		self.comments: dict[int, list[str]] = {}
		self.issues: dict[int, WorkRequest] = {}

	async def get_issue(self, issue_number: int) -> WorkRequest:
		return self.issues[issue_number]

	async def add_labels(self, issue_number: int, labels: list[str]) -> None:
		self.labels.setdefault(issue_number, []).extend(labels)

	async def create_comment(self, issue_number: int, body: str) -> None:
		self.comments.setdefault(issue_number, []).append(body)


@pytest.fixture()
def config() -> DispatchConfig:
	"""Config with jdbc and s3 components and one agent slot."""
	return DispatchConfig(
		components={
			"jdbc": ["connectors/jdbc/**"],
			"s3": ["connectors/s3/**"],
		},
		parallel_agents=1,
	)


@pytest.fixture()
def store() -> MemoryStore:
	return MemoryStore()


@pytest.fixture()
def queue(store: MemoryStore) -> QueueStore:
	return QueueStore(store)


@pytest.fixture()
def locks(store: MemoryStore) -> LockTable:
	return LockTable(store)


@pytest.fixture()
def dispatcher() -> FakeDispatcher:
	return FakeDispatcher()


@pytest.fixture()
def tracker() -> FakeTracker:
	return FakeTracker()
