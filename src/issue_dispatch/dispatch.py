"""Dispatchers that start an admitted unit of work.

The scheduler only knows the ``Dispatcher`` interface. The workflow
dispatcher triggers a GitHub Actions workflow that drafts a work PR; it
stands in until work is executed directly.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from issue_dispatch.github import GitHubAPIError, GitHubClient
from issue_dispatch.models import WorkDescriptor

logger = logging.getLogger(__name__)


class DispatchError(Exception):
	"""A dispatcher could not start a unit of work."""


class Dispatcher(ABC):
	"""Abstract base for work dispatchers.

	``dispatch`` returns once the work has been handed off and raises on
	failure. It is never retried by the caller.
	"""

	@abstractmethod
	async def dispatch(self, work: WorkDescriptor) -> None:
		"""Start the unit of work described by ``work``."""


class WorkflowDispatcher(Dispatcher):
	"""Triggers a ``workflow_dispatch`` event for each admitted entry."""

	def __init__(self, client: GitHubClient, workflow: str, ref: str = "main") -> None:
		self.client = client
		self.workflow = workflow
		self.ref = ref

	@staticmethod
	def workflow_inputs(work: WorkDescriptor) -> dict[str, str]:
		# workflow_dispatch inputs are strings only
		return {
			"issue_number": str(work.id),
			"component": work.component,
			"files": ",".join(work.files),
		}

	async def dispatch(self, work: WorkDescriptor) -> None:
		logger.info("Dispatching #%d via %s@%s", work.id, self.workflow, self.ref)
		try:
			await self.client.dispatch_workflow(self.workflow, self.ref, self.workflow_inputs(work))
		except (GitHubAPIError, httpx.HTTPError) as exc:
			raise DispatchError(f"Dispatch of #{work.id} failed: {exc}") from exc


class LogOnlyDispatcher(Dispatcher):
	"""Records dispatches without side effects. Used for dry runs."""

	def __init__(self) -> None:
		self.dispatched: list[WorkDescriptor] = []

	async def dispatch(self, work: WorkDescriptor) -> None:
		logger.info("[dry-run] would dispatch #%d (%s): %s", work.id, work.component, ", ".join(work.files))
		self.dispatched.append(work)
