"""Data models for the work queue and lock table."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

QUEUED = "queued"
IN_PROGRESS = "in-progress"
DONE = "done"
FAILED = "failed"

STATUSES = (QUEUED, IN_PROGRESS, DONE, FAILED)
TERMINAL_STATUSES = (DONE, FAILED)

Status = Literal["queued", "in-progress", "done", "failed"]


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _dedupe(values: list[str]) -> list[str]:
	"""Drop repeats, keeping the first occurrence of each value."""
	return list(dict.fromkeys(values))


# -- Persisted document schemas --


class QueueEntrySchema(BaseModel):
	"""Pydantic schema for one entry of the queue document.

	The document keys the issue id as ``number``; ``id`` is accepted too.
	Unknown keys are kept so other tooling can annotate entries.
	"""

	model_config = ConfigDict(extra="allow", populate_by_name=True)

	id: int = Field(alias="number")
	title: str = ""
	component: str = "unknown"
	files: list[str] = []
	labels: list[str] = []
	priority: int = 1000
	status: Status = "queued"
	started_at: str | None = None


class LockEntrySchema(BaseModel):
	"""Pydantic schema for one entry of the lock document."""

	model_config = ConfigDict(extra="allow", populate_by_name=True)

	owner: int = Field(alias="issue")
	files: list[str] = []
	agent: str | None = "human"
	pr: int | str | None = None
	started_at: str | None = None


class IssueLabelSchema(BaseModel, extra="ignore"):
	name: str


class IssueSchema(BaseModel, extra="ignore"):
	"""The subset of a GitHub issue object used by triage."""

	number: int
	title: str = ""
	body: str | None = None
	labels: list[IssueLabelSchema | str] = []


class IssueEventSchema(BaseModel, extra="ignore"):
	"""GitHub ``issues`` webhook payload (only the issue is read)."""

	issue: IssueSchema | None = None


# -- Domain models --


@dataclass
class WorkRequest:
	"""An inbound work request (a GitHub issue)."""

	id: int
	title: str = ""
	body: str = ""
	labels: list[str] = field(default_factory=list)

	@classmethod
	def from_issue(cls, issue: IssueSchema) -> WorkRequest:
		labels = [lbl if isinstance(lbl, str) else lbl.name for lbl in issue.labels]
		return cls(id=issue.number, title=issue.title, body=issue.body or "", labels=labels)


@dataclass
class QueueEntry:
	"""One unit of pending or active work."""

	id: int
	title: str = ""
	component: str = "unknown"
	files: list[str] = field(default_factory=list)
	labels: list[str] = field(default_factory=list)
	priority: int = 1000
	status: str = QUEUED
	started_at: str | None = None
	extra: dict[str, Any] = field(default_factory=dict)

	@property
	def sort_key(self) -> tuple[int, int]:
		return (self.priority, self.id)

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> QueueEntry:
		schema = QueueEntrySchema.model_validate(data)
		return cls(
			id=schema.id,
			title=schema.title,
			component=schema.component,
			files=_dedupe(schema.files),
			labels=_dedupe(schema.labels),
			priority=schema.priority,
			status=schema.status,
			started_at=schema.started_at,
			extra=dict(schema.model_extra or {}),
		)

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = dict(self.extra)
		data.update({
			"number": self.id,
			"title": self.title,
			"component": self.component,
			"files": list(self.files),
			"labels": list(self.labels),
			"priority": self.priority,
			"status": self.status,
		})
		if self.started_at is not None:
			data["started_at"] = self.started_at
		return data


@dataclass
class LockEntry:
	"""An active reservation of file regions by one queue entry."""

	owner: int
	files: list[str] = field(default_factory=list)
	agent: str | None = "human"
	pr: int | str | None = None
	started_at: str | None = None
	extra: dict[str, Any] = field(default_factory=dict)

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> LockEntry:
		schema = LockEntrySchema.model_validate(data)
		return cls(
			owner=schema.owner,
			files=list(schema.files),
			agent=schema.agent,
			pr=schema.pr,
			started_at=schema.started_at,
			extra=dict(schema.model_extra or {}),
		)

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = dict(self.extra)
		data.update({
			"issue": self.owner,
			"files": list(self.files),
			"agent": self.agent,
			"pr": self.pr,
			"started_at": self.started_at,
		})
		return data


@dataclass(frozen=True)
class WorkDescriptor:
	"""Payload handed to a dispatcher when an entry is admitted."""

	id: int
	component: str
	files: tuple[str, ...] = ()
