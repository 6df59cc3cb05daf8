"""GitHub REST client for issue triage and workflow dispatch.

Uses an async httpx client. Every call is a single request; non-success
responses raise ``GitHubAPIError`` with the status and body and are never
retried.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from issue_dispatch.config import DEFAULT_API_URL, GitHubSettings
from issue_dispatch.models import IssueSchema, WorkRequest

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0


class GitHubAPIError(Exception):
	"""A GitHub API call returned a non-success response."""

	def __init__(self, status_code: int, reason: str, body: str) -> None:
		self.status_code = status_code
		self.reason = reason
		self.body = body
		super().__init__(f"GitHub request failed: {status_code} {reason}\n{body}")


class IssueTracker(ABC):
	"""Operations triage needs from an issue tracker."""

	@abstractmethod
	async def get_issue(self, issue_number: int) -> WorkRequest:
		"""Read an issue as a work request."""

	@abstractmethod
	async def add_labels(self, issue_number: int, labels: list[str]) -> None:
		"""Add labels to an issue."""

	@abstractmethod
	async def create_comment(self, issue_number: int, body: str) -> None:
		"""Post a comment on an issue."""


class GitHubClient(IssueTracker):
	"""Thin wrapper over the repository-scoped GitHub REST endpoints."""

	def __init__(
		self,
		token: str,
		repository: str,
		api_url: str = DEFAULT_API_URL,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self._token = token
		self.repository = repository
		self.api_url = api_url.rstrip("/")
		self._transport = transport
		self._client: httpx.AsyncClient | None = None

	@classmethod
	def from_settings(cls, settings: GitHubSettings) -> GitHubClient:
		return cls(settings.token, settings.repository, settings.api_url)

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(
				base_url=f"{self.api_url}/repos/{self.repository}",
				headers={
					"Authorization": f"Bearer {self._token}",
					"Accept": "application/vnd.github+json",
				},
				timeout=REQUEST_TIMEOUT,
				transport=self._transport,
			)
		return self._client

	async def request(self, method: str, route: str, body: dict[str, Any] | None = None) -> Any:
		client = await self._ensure_client()
		logger.debug("GitHub %s %s", method, route)
		response = await client.request(method, route, json=body)
		if not response.is_success:
			raise GitHubAPIError(response.status_code, response.reason_phrase, response.text)
		if response.status_code == 204 or not response.content:
			return None
		return response.json()

	async def get_issue(self, issue_number: int) -> WorkRequest:
		data = await self.request("GET", f"/issues/{issue_number}")
		return WorkRequest.from_issue(IssueSchema.model_validate(data))

	async def add_labels(self, issue_number: int, labels: list[str]) -> None:
		if not labels:
			return
		await self.request("POST", f"/issues/{issue_number}/labels", {"labels": labels})

	async def create_comment(self, issue_number: int, body: str) -> None:
		await self.request("POST", f"/issues/{issue_number}/comments", {"body": body})

	async def dispatch_workflow(self, workflow: str, ref: str, inputs: dict[str, str]) -> None:
		await self.request("POST", f"/actions/workflows/{workflow}/dispatches", {"ref": ref, "inputs": inputs})

	async def close(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None

	async def __aenter__(self) -> GitHubClient:
		return self

	async def __aexit__(self, *exc: object) -> None:
		await self.close()
