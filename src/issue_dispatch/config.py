"""Configuration loader for issue-dispatch.

Two document shapes are accepted. ``.json`` files use the shape shared
with the repository automation::

	{"components": {"jdbc": ["connectors/jdbc/**"]},
	 "labels": {"triaged": "triaged"},
	 "parallelAgents": 2}

``.toml`` files use snake_case tables (``[components]``, ``[labels]``,
``parallel_agents``, ``[paths]``, ``[dispatch]``, ``[scheduler]``).
"""

from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = ".ai/config.json"
DEFAULT_API_URL = "https://api.github.com"

PERSIST_END_OF_PASS = "end_of_pass"
PERSIST_PER_ADMISSION = "per_admission"
PERSIST_MODES = (PERSIST_END_OF_PASS, PERSIST_PER_ADMISSION)


class ConfigError(Exception):
	"""Missing or malformed configuration. Always fatal."""


@dataclass
class LabelsConfig:
	"""Label names applied during triage."""

	triaged: str = "triaged"


@dataclass
class PathsConfig:
	"""Locations of the persisted documents, relative to the state root."""

	queue: str = ".ai/queue.json"
	locks: str = ".ai/locks.json"


@dataclass
class DispatchTargetConfig:
	"""Where admitted work is sent."""

	workflow: str = "create-draft-work-pr.yml"
	ref: str = "main"
	agent: str = "human"


@dataclass
class SchedulerConfig:
	"""Admission pass settings."""

	persist_mode: str = PERSIST_END_OF_PASS  # end_of_pass/per_admission


@dataclass
class DispatchConfig:
	"""Top-level issue-dispatch configuration."""

	components: dict[str, list[str]] = field(default_factory=dict)
	labels: LabelsConfig = field(default_factory=LabelsConfig)
	parallel_agents: int = 1
	paths: PathsConfig = field(default_factory=PathsConfig)
	dispatch: DispatchTargetConfig = field(default_factory=DispatchTargetConfig)
	scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

	def globs_for(self, component: str) -> list[str]:
		return list(self.components.get(component, []))


@dataclass
class GitHubSettings:
	"""Credentials and target repository for the GitHub REST API."""

	token: str
	repository: str
	api_url: str = DEFAULT_API_URL

	@classmethod
	def from_env(cls) -> GitHubSettings:
		token = os.environ.get("GH_TOKEN") or os.environ.get("GITHUB_TOKEN")
		if not token:
			raise ConfigError("Missing required environment variable: GH_TOKEN")
		return cls(
			token=token,
			repository=require_env("GITHUB_REPOSITORY"),
			api_url=os.environ.get("GITHUB_API_URL") or DEFAULT_API_URL,
		)


def require_env(name: str) -> str:
	value = os.environ.get(name)
	if not value:
		raise ConfigError(f"Missing required environment variable: {name}")
	return value


def _build_components(data: Any) -> dict[str, list[str]]:
	if not isinstance(data, dict):
		raise ConfigError("components must be a table mapping component names to glob lists")
	components: dict[str, list[str]] = {}
	for key, globs in data.items():
		if isinstance(globs, str):
			globs = [globs]
		if not isinstance(globs, list):
			raise ConfigError(f"components.{key} must be a list of globs")
		components[str(key).lower()] = [str(g) for g in globs]
	return components


def _build_labels(data: dict[str, Any]) -> LabelsConfig:
	lc = LabelsConfig()
	if data.get("triaged"):
		lc.triaged = str(data["triaged"])
	return lc


def _build_paths(data: dict[str, Any]) -> PathsConfig:
	pc = PathsConfig()
	for key in ("queue", "locks"):
		if key in data:
			setattr(pc, key, str(data[key]))
	return pc


def _build_dispatch(data: dict[str, Any]) -> DispatchTargetConfig:
	dc = DispatchTargetConfig()
	for key in ("workflow", "ref", "agent"):
		if key in data:
			setattr(dc, key, str(data[key]))
	return dc


def _build_scheduler(data: dict[str, Any]) -> SchedulerConfig:
	sc = SchedulerConfig()
	if "persist_mode" in data:
		sc.persist_mode = str(data["persist_mode"])
	return sc


def _read_document(config_path: Path) -> dict[str, Any]:
	try:
		if config_path.suffix == ".toml":
			with open(config_path, "rb") as f:
				return tomllib.load(f)
		data = json.loads(config_path.read_text(encoding="utf-8"))
	except (OSError, ValueError) as exc:
		raise ConfigError(f"Failed to parse config {config_path}: {exc}") from exc
	if not isinstance(data, dict):
		raise ConfigError(f"Config {config_path} must contain an object")
	return data


def load_config(path: str | Path = DEFAULT_CONFIG_PATH) -> DispatchConfig:
	"""Load a configuration document.

	Args:
		path: Path to a ``.json`` or ``.toml`` config file.

	Returns:
		Parsed DispatchConfig. A missing file yields the defaults.

	Raises:
		ConfigError: If the file cannot be parsed or has the wrong shape.
	"""
	config_path = Path(path)
	if not config_path.exists():
		return DispatchConfig()

	data = _read_document(config_path)
	dc = DispatchConfig()
	if "components" in data:
		dc.components = _build_components(data["components"])
	if isinstance(data.get("labels"), dict):
		dc.labels = _build_labels(data["labels"])
	# camelCase is the shared JSON shape, snake_case the TOML one
	for key in ("parallelAgents", "parallel_agents"):
		if key in data:
			try:
				dc.parallel_agents = int(data[key])
			except (TypeError, ValueError) as exc:
				raise ConfigError(f"{key} must be an integer") from exc
	if isinstance(data.get("paths"), dict):
		dc.paths = _build_paths(data["paths"])
	if isinstance(data.get("dispatch"), dict):
		dc.dispatch = _build_dispatch(data["dispatch"])
	if isinstance(data.get("scheduler"), dict):
		dc.scheduler = _build_scheduler(data["scheduler"])
	return dc


def validate_config(config: DispatchConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded DispatchConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	if config.parallel_agents < 0:
		issues.append(("error", f"parallel_agents must not be negative: {config.parallel_agents}"))
	elif config.parallel_agents == 0:
		issues.append(("warning", "parallel_agents is zero; the scheduler will never dispatch"))

	if config.scheduler.persist_mode not in PERSIST_MODES:
		issues.append((
			"error",
			f"scheduler.persist_mode must be one of {', '.join(PERSIST_MODES)}: {config.scheduler.persist_mode}",
		))

	if "unknown" in config.components:
		issues.append(("warning", "component 'unknown' is reserved for unresolved components"))
	for name, globs in config.components.items():
		if not globs:
			issues.append(("warning", f"component {name!r} has no globs"))
		for glob in globs:
			if not glob.strip():
				issues.append(("error", f"component {name!r} has an empty glob"))

	if not config.labels.triaged:
		issues.append(("error", "labels.triaged must not be empty"))

	return issues
