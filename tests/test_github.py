"""Tests for the GitHub REST client and workflow dispatcher."""

from __future__ import annotations

import json

import httpx
import pytest

from issue_dispatch.dispatch import DispatchError, LogOnlyDispatcher, WorkflowDispatcher
from issue_dispatch.github import GitHubAPIError, GitHubClient
from issue_dispatch.models import WorkDescriptor


def _client(handler, requests: list[httpx.Request]) -> GitHubClient:
	def _record(request: httpx.Request) -> httpx.Response:
		requests.append(request)
		return handler(request)

	return GitHubClient(
		"test-token", "acme/connectors",
		api_url="https://github.example/api/v3/",
		transport=httpx.MockTransport(_record),
	)


class TestGitHubClient:
	@pytest.mark.asyncio
	async def test_add_labels(self) -> None:
		requests: list[httpx.Request] = []
		client = _client(lambda r: httpx.Response(200, json=[]), requests)
		await client.add_labels(10, ["triaged", "type:bug"])
		await client.close()

		req = requests[0]
		assert req.method == "POST"
		assert str(req.url) == "https://github.example/api/v3/repos/acme/connectors/issues/10/labels"
		assert req.headers["Authorization"] == "Bearer test-token"
		assert req.headers["Accept"] == "application/vnd.github+json"
		assert json.loads(req.content) == {"labels": ["triaged", "type:bug"]}

	@pytest.mark.asyncio
	async def test_add_labels_empty_is_noop(self) -> None:
		requests: list[httpx.Request] = []
		client = _client(lambda r: httpx.Response(200), requests)
		await client.add_labels(10, [])
		assert requests == []

	@pytest.mark.asyncio
	async def test_create_comment(self) -> None:
		requests: list[httpx.Request] = []
		async with _client(lambda r: httpx.Response(201, json={"id": 1}), requests) as client:
			await client.create_comment(10, "hello")
		assert requests[0].url.path.endswith("/issues/10/comments")
		assert json.loads(requests[0].content) == {"body": "hello"}

	@pytest.mark.asyncio
	async def test_get_issue(self) -> None:
		payload = {"number": 7, "title": "t", "body": None, "labels": [{"name": "type:bug"}]}
		requests: list[httpx.Request] = []
		async with _client(lambda r: httpx.Response(200, json=payload), requests) as client:
			issue = await client.get_issue(7)
		assert issue.id == 7
		assert issue.labels == ["type:bug"]
		assert requests[0].method == "GET"

	@pytest.mark.asyncio
	async def test_no_content_returns_none(self) -> None:
		requests: list[httpx.Request] = []
		async with _client(lambda r: httpx.Response(204), requests) as client:
			assert await client.request("POST", "/actions/workflows/x.yml/dispatches", {}) is None

	@pytest.mark.asyncio
	async def test_error_carries_status_and_body(self) -> None:
		requests: list[httpx.Request] = []
		async with _client(lambda r: httpx.Response(404, text='{"message": "Not Found"}'), requests) as client:
			with pytest.raises(GitHubAPIError) as excinfo:
				await client.create_comment(3, "hello")
		assert excinfo.value.status_code == 404
		assert "Not Found" in str(excinfo.value)
		assert len(requests) == 1


class TestWorkflowDispatcher:
	@pytest.mark.asyncio
	async def test_dispatch_payload(self) -> None:
		requests: list[httpx.Request] = []
		async with _client(lambda r: httpx.Response(204), requests) as client:
			dispatcher = WorkflowDispatcher(client, "create-draft-work-pr.yml", "main")
			await dispatcher.dispatch(WorkDescriptor(id=10, component="jdbc", files=("connectors/jdbc/**", "docs/**")))

		req = requests[0]
		assert req.url.path.endswith("/actions/workflows/create-draft-work-pr.yml/dispatches")
		assert json.loads(req.content) == {
			"ref": "main",
			"inputs": {"issue_number": "10", "component": "jdbc", "files": "connectors/jdbc/**,docs/**"},
		}

	@pytest.mark.asyncio
	async def test_dispatch_failure_wrapped(self) -> None:
		requests: list[httpx.Request] = []
		async with _client(lambda r: httpx.Response(422, text="No ref found"), requests) as client:
			dispatcher = WorkflowDispatcher(client, "create-draft-work-pr.yml")
			with pytest.raises(DispatchError, match="422"):
				await dispatcher.dispatch(WorkDescriptor(id=10, component="jdbc"))


@pytest.mark.asyncio
async def test_log_only_dispatcher_records() -> None:
	dispatcher = LogOnlyDispatcher()
	work = WorkDescriptor(id=1, component="s3", files=("connectors/s3/**",))
	await dispatcher.dispatch(work)
	assert dispatcher.dispatched == [work]
