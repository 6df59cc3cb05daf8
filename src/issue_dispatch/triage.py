"""Issue triage: turn an issue-form submission into a queue entry.

Reads the Component, Complexity and "Likely files or directories" fields
of the issue form, scores the request, and merges the result into the
queue idempotently. Re-triaging an unchanged issue leaves the queue as it
was.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from issue_dispatch.config import DispatchConfig
from issue_dispatch.github import IssueTracker
from issue_dispatch.models import QUEUED, IssueEventSchema, QueueEntry, WorkRequest, _dedupe
from issue_dispatch.work_queue import QueueStore

logger = logging.getLogger(__name__)

COMPONENT_HEADING = "Component"
COMPLEXITY_HEADING = "Complexity"
HINTS_HEADING = "Likely files or directories"

UNKNOWN_COMPONENT = "unknown"
COMPLEXITIES = ("S", "M", "L")
DEFAULT_COMPLEXITY = "M"

TYPE_PREFIX = "type:"
UNKNOWN_TYPE_LABEL = "type:unknown"
BUG_TYPE_LABEL = "type:bug"

BASE_PRIORITY = 1000
BUG_BONUS = 400
COMPLEXITY_ADJUSTMENT = {"S": -150, "M": 0, "L": 150}

# GitHub issue forms render unanswered fields with this placeholder
_NO_RESPONSE = "_no response_"

_HINT_SPLIT_RE = re.compile(r"\r?\n|,")


class TriageInputError(Exception):
	"""The inbound event carries no work request."""


@dataclass
class TriageResult:
	"""Outcome of triaging one request."""

	entry: QueueEntry
	labels: list[str] = field(default_factory=list)
	type_label: str = UNKNOWN_TYPE_LABEL
	complexity: str = DEFAULT_COMPLEXITY
	created: bool = True
	comment: str = ""


def parse_form_value(body: str | None, heading: str) -> str | None:
	"""Return the trimmed text under ``### <heading>``, or None if absent."""
	if not body:
		return None
	pattern = re.compile(rf"### {re.escape(heading)}\s*\n([^#]+)", re.IGNORECASE)
	match = pattern.search(body)
	if not match:
		return None
	value = match.group(1).strip()
	if not value or value.lower() == _NO_RESPONSE:
		return None
	return value


def normalise_component(value: str | None, config: DispatchConfig) -> str:
	key = (value or "").lower()
	if key in config.components:
		return key
	return UNKNOWN_COMPONENT


def normalise_complexity(value: str | None) -> str:
	clean = (value or "").upper()
	if clean in COMPLEXITIES:
		return clean
	return DEFAULT_COMPLEXITY


def extract_hints(body: str | None) -> list[str]:
	"""Split the file-hints field on newlines or commas."""
	value = parse_form_value(body, HINTS_HEADING)
	if not value:
		return []
	return [token.strip() for token in _HINT_SPLIT_RE.split(value) if token.strip()]


def type_label(labels: list[str]) -> str:
	for name in labels:
		if name.startswith(TYPE_PREFIX):
			return name
	return UNKNOWN_TYPE_LABEL


def compute_priority(type_lbl: str, complexity: str) -> int:
	"""Score a request; lower scores dispatch sooner."""
	priority = BASE_PRIORITY
	if type_lbl == BUG_TYPE_LABEL:
		priority -= BUG_BONUS
	return priority + COMPLEXITY_ADJUSTMENT.get(complexity, 0)


def triage_labels(type_lbl: str, component: str, complexity: str, config: DispatchConfig) -> list[str]:
	return _dedupe([
		type_lbl,
		f"component:{component}",
		f"complexity:{complexity}",
		config.labels.triaged,
	])


def build_entry(
	request: WorkRequest,
	config: DispatchConfig,
	existing: QueueEntry | None = None,
) -> TriageResult:
	"""Compute the queue entry for ``request``, merged with ``existing``.

	The existing entry's status, start time and any extra keys are kept;
	its labels and files are unioned with the new ones, existing first.
	"""
	component = normalise_component(parse_form_value(request.body, COMPONENT_HEADING), config)
	complexity = normalise_complexity(parse_form_value(request.body, COMPLEXITY_HEADING))
	hints = extract_hints(request.body)
	type_lbl = type_label(request.labels)

	labels = triage_labels(type_lbl, component, complexity, config)
	files = _dedupe(config.globs_for(component) + hints)
	priority = compute_priority(type_lbl, complexity)

	entry = QueueEntry(
		id=request.id,
		title=request.title,
		component=component,
		files=files,
		labels=list(labels),
		priority=priority,
		status=QUEUED,
	)
	if existing is not None:
		entry.status = existing.status
		entry.started_at = existing.started_at
		entry.extra = dict(existing.extra)
		entry.labels = _dedupe(existing.labels + labels)
		entry.files = _dedupe(existing.files + files)

	return TriageResult(
		entry=entry,
		labels=labels,
		type_label=type_lbl,
		complexity=complexity,
		created=existing is None,
	)


def render_summary(result: TriageResult) -> str:
	entry = result.entry
	if entry.files:
		globs = ", ".join(f"`{f}`" for f in entry.files)
	else:
		globs = "_none_"
	lines = [
		"### Auto-triage summary",
		f"- Component: **{entry.component}**",
		f"- Complexity: **{result.complexity}**",
		f"- Type: **{result.type_label.removeprefix(TYPE_PREFIX)}**",
		f"- Status: **{entry.status}**",
		f"- Target globs: {globs}",
		"",
		f"Priority score: {entry.priority}.",
	]
	return "\n".join(lines)


def load_event(path: str | Path) -> WorkRequest:
	"""Read a GitHub ``issues`` event payload into a WorkRequest.

	Raises:
		TriageInputError: If the payload is unreadable or has no issue.
	"""
	try:
		raw = json.loads(Path(path).read_text(encoding="utf-8"))
		event = IssueEventSchema.model_validate(raw)
	except (OSError, ValueError) as exc:
		# pydantic's ValidationError is a ValueError
		raise TriageInputError(f"Unreadable event payload {path}: {exc}") from exc
	if event.issue is None:
		raise TriageInputError("Triage expects an issue payload")
	return WorkRequest.from_issue(event.issue)


class Triage:
	"""Applies triage to the queue and reports back on the issue."""

	def __init__(self, config: DispatchConfig, queue: QueueStore, tracker: IssueTracker) -> None:
		self.config = config
		self.queue = queue
		self.tracker = tracker

	async def run(self, request: WorkRequest) -> TriageResult:
		self.queue.load()
		result = build_entry(request, self.config, self.queue.get(request.id))
		self.queue.upsert(result.entry)
		self.queue.sort()
		self.queue.save()
		logger.info(
			"Triaged #%d: component=%s complexity=%s priority=%d status=%s (%s)",
			request.id, result.entry.component, result.complexity,
			result.entry.priority, result.entry.status,
			"new" if result.created else "merged",
		)

		await self.tracker.add_labels(request.id, result.labels)
		result.comment = render_summary(result)
		await self.tracker.create_comment(request.id, result.comment)
		return result
