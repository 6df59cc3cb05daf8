"""CLI interface for issue-dispatch."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

import httpx

from issue_dispatch.completion import CompletionError, check_invariants, complete, release
from issue_dispatch.config import (
	DEFAULT_CONFIG_PATH,
	ConfigError,
	DispatchConfig,
	GitHubSettings,
	load_config,
	require_env,
	validate_config,
)
from issue_dispatch.dispatch import DispatchError, Dispatcher, LogOnlyDispatcher, WorkflowDispatcher
from issue_dispatch.github import GitHubAPIError, GitHubClient
from issue_dispatch.locks import LOCKS_KEY, LockTable
from issue_dispatch.models import DONE, FAILED
from issue_dispatch.scheduler import Scheduler, SchedulerReport
from issue_dispatch.store import JsonFileStore, StoreError
from issue_dispatch.triage import Triage, TriageInputError, TriageResult, load_event
from issue_dispatch.work_queue import QUEUE_KEY, QueueStore

logger = logging.getLogger(__name__)

FATAL_ERRORS = (
	ConfigError,
	StoreError,
	GitHubAPIError,
	DispatchError,
	TriageInputError,
	CompletionError,
	httpx.HTTPError,
)


def _add_common(parser: argparse.ArgumentParser) -> None:
	parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Config file path (.json or .toml)")
	parser.add_argument("--state-dir", default=".", help="Directory the queue and lock paths are relative to")


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="issue-dispatch",
		description="Issue-driven work queue with file-lock aware dispatch",
	)
	parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
	sub = parser.add_subparsers(dest="command")

	# issue-dispatch triage
	triage = sub.add_parser("triage", help="Triage an issue event into the queue")
	_add_common(triage)
	triage.add_argument("--event", default=None, help="Event payload path (default: $GITHUB_EVENT_PATH)")

	# issue-dispatch schedule
	schedule = sub.add_parser("schedule", help="Run one admission pass")
	_add_common(schedule)
	schedule.add_argument("--dry-run", action="store_true", help="Log admissions without dispatching or saving")

	# issue-dispatch complete
	comp = sub.add_parser("complete", help="Mark an entry done or failed and release its lock")
	_add_common(comp)
	comp.add_argument("id", type=int, help="Issue number")
	comp.add_argument("--status", choices=[DONE, FAILED], default=DONE)

	# issue-dispatch unlock
	unlock = sub.add_parser("unlock", help="Release a lock by hand and requeue its entry")
	_add_common(unlock)
	unlock.add_argument("id", type=int, help="Issue number")

	# issue-dispatch status
	status = sub.add_parser("status", help="Show the queue and active locks")
	_add_common(status)
	status.add_argument("--json", action="store_true", dest="json_output", help="JSON output")

	# issue-dispatch check
	check = sub.add_parser("check", help="Check queue and lock documents for consistency")
	_add_common(check)

	# issue-dispatch validate-config
	vc = sub.add_parser("validate-config", help="Validate config file semantically")
	_add_common(vc)

	return parser


def _open_stores(args: argparse.Namespace, config: DispatchConfig) -> tuple[QueueStore, LockTable]:
	store = JsonFileStore(args.state_dir, {QUEUE_KEY: config.paths.queue, LOCKS_KEY: config.paths.locks})
	return QueueStore(store), LockTable(store)


async def _run_triage(
	config: DispatchConfig, queue: QueueStore, settings: GitHubSettings, event_path: str,
) -> TriageResult:
	request = load_event(event_path)
	async with GitHubClient.from_settings(settings) as client:
		return await Triage(config, queue, client).run(request)


def cmd_triage(args: argparse.Namespace) -> int:
	"""Triage the issue in a GitHub event payload."""
	event_path = args.event or require_env("GITHUB_EVENT_PATH")
	settings = GitHubSettings.from_env()
	config = load_config(args.config)
	queue, _ = _open_stores(args, config)

	result = asyncio.run(_run_triage(config, queue, settings, event_path))
	print(f"#{result.entry.id}: {result.entry.component} priority={result.entry.priority} status={result.entry.status}")
	return 0


async def _run_schedule(scheduler: Scheduler, client: GitHubClient | None) -> SchedulerReport:
	try:
		return await scheduler.run_pass()
	finally:
		if client is not None:
			await client.close()


def cmd_schedule(args: argparse.Namespace) -> int:
	"""Run one admission pass."""
	config = load_config(args.config)
	queue, locks = _open_stores(args, config)

	client: GitHubClient | None = None
	dispatcher: Dispatcher
	if args.dry_run:
		dispatcher = LogOnlyDispatcher()
	else:
		client = GitHubClient.from_settings(GitHubSettings.from_env())
		dispatcher = WorkflowDispatcher(client, config.dispatch.workflow, config.dispatch.ref)

	scheduler = Scheduler(config, queue, locks, dispatcher, persist=not args.dry_run)
	report = asyncio.run(_run_schedule(scheduler, client))

	print(f"Capacity: {report.capacity} | stopped: {report.stopped_reason}")
	if report.dispatched:
		print(f"Dispatched: {', '.join(f'#{i}' for i in report.dispatched)}")
	for entry_id, owners in report.blocked.items():
		print(f"Blocked: #{entry_id} by {', '.join(f'#{o}' for o in owners)}")
	if report.deferred:
		print(f"Deferred (no capacity): {', '.join(f'#{i}' for i in report.deferred)}")
	return 0


def cmd_complete(args: argparse.Namespace) -> int:
	"""Mark an entry done or failed."""
	config = load_config(args.config)
	queue, locks = _open_stores(args, config)
	entry = complete(queue, locks, args.id, args.status)
	print(f"#{entry.id} is now {entry.status}")
	return 0


def cmd_unlock(args: argparse.Namespace) -> int:
	"""Release a lock by hand."""
	config = load_config(args.config)
	queue, locks = _open_stores(args, config)
	entry = release(queue, locks, args.id)
	if entry is None:
		print(f"#{args.id} held no lock and was not in progress")
	else:
		print(f"#{entry.id} unlocked and requeued")
	return 0


def cmd_status(args: argparse.Namespace) -> int:
	"""Show the queue and active locks."""
	config = load_config(args.config)
	queue, locks = _open_stores(args, config)
	entries = queue.load()
	held = locks.load()

	if args.json_output:
		print(json.dumps({
			"queue": [e.to_dict() for e in entries],
			"locks": [lock.to_dict() for lock in held],
		}, indent=2))
		return 0

	if not entries:
		print("Queue is empty.")
	for e in entries:
		status_icon = {"queued": " ", "in-progress": ">", "done": "+", "failed": "x"}.get(e.status, "?")
		print(f"[{status_icon}] #{e.id} p={e.priority} {e.component} | {e.title[:60]} | {e.status}")
	print(f"\nActive locks ({len(held)}):")
	for lock in held:
		print(f"  #{lock.owner} ({lock.agent or '-'}): {', '.join(lock.files) or '-'}")
	return 0


def cmd_check(args: argparse.Namespace) -> int:
	"""Check the persisted documents for consistency."""
	config = load_config(args.config)
	queue, locks = _open_stores(args, config)
	problems = check_invariants(queue.load(), locks.load())
	for problem in problems:
		print(f"[ERROR] {problem}")
	if not problems:
		print("Queue and locks OK")
	return 1 if problems else 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Report config problems the loader accepts but the scheduler would trip on."""
	config = load_config(args.config)
	issues = sorted(validate_config(config), key=lambda issue: issue[0] != "error")
	if not issues:
		print(f"{args.config}: {len(config.components)} component(s), {config.parallel_agents} agent slot(s), no problems")
		return 0

	n_errors = sum(1 for level, _ in issues if level == "error")
	for level, msg in issues:
		print(f"{args.config}: {level}: {msg}")
	print(f"{n_errors} error(s), {len(issues) - n_errors} warning(s)")
	return 1 if n_errors else 0


COMMANDS = {
	"triage": cmd_triage,
	"schedule": cmd_schedule,
	"complete": cmd_complete,
	"unlock": cmd_unlock,
	"status": cmd_status,
	"check": cmd_check,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)

	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except FATAL_ERRORS as exc:
		logger.error("%s failed: %s", args.command, exc)
		return 1


if __name__ == "__main__":
	sys.exit(main())
