"""Versioned document storage for the queue and lock documents.

Scheduling code talks to a ``DocumentStore`` rather than to files so the
JSON files can be swapped for a database or a coordination service. Each
read returns an opaque version token; passing it back to ``put`` turns the
write into a compare-and-swap.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StoreError(Exception):
	"""A persisted document could not be read, parsed or written."""


class StaleWriteError(StoreError):
	"""The document changed between read and compare-and-swap write."""


@dataclass(frozen=True)
class Document:
	"""A stored document and the version it was read at.

	``data`` and ``version`` are both None when the document does not exist.
	"""

	data: Any = None
	version: str | None = None

	@property
	def exists(self) -> bool:
		return self.version is not None


def _serialize(data: Any) -> bytes:
	return (json.dumps(data, indent=2) + "\n").encode("utf-8")


def _version_of(raw: bytes) -> str:
	return hashlib.sha256(raw).hexdigest()


def _file_mode(path: Path) -> int:
	"""Mode for a rewritten file: the existing one, or 0666 less the umask."""
	try:
		return path.stat().st_mode & 0o777
	except FileNotFoundError:
		pass
	umask = os.umask(0)
	os.umask(umask)
	return 0o666 & ~umask


class DocumentStore(ABC):
	"""Abstract key -> JSON document store."""

	@abstractmethod
	def get(self, key: str) -> Document:
		"""Read a document. A missing document is not an error."""

	@abstractmethod
	def put(self, key: str, data: Any, expected_version: str | None = None) -> str:
		"""Write a document and return its new version.

		When ``expected_version`` is given, the write only succeeds if the
		stored version still matches; otherwise ``StaleWriteError`` is raised.
		"""

	def _check_version(self, key: str, current: str | None, expected: str | None) -> None:
		if expected is not None and current != expected:
			raise StaleWriteError(
				f"Document {key!r} changed since it was read "
				f"(expected version {expected[:12]}, found {(current or 'none')[:12]})"
			)


class JsonFileStore(DocumentStore):
	"""One pretty-printed JSON file per key under a root directory.

	Writes go through a temporary file and ``os.replace`` so readers never
	see a half-written document. The compare-and-swap check and the rename
	are not atomic with respect to other processes.
	"""

	def __init__(self, root: str | Path, paths: dict[str, str] | None = None) -> None:
		self.root = Path(root)
		self._paths = dict(paths or {})

	def path_for(self, key: str) -> Path:
		rel = self._paths.get(key, f"{key}.json")
		path = Path(rel)
		return path if path.is_absolute() else self.root / path

	def _read_raw(self, key: str) -> bytes | None:
		path = self.path_for(key)
		try:
			return path.read_bytes()
		except FileNotFoundError:
			return None
		except OSError as exc:
			raise StoreError(f"Failed to read {path}: {exc}") from exc

	def get(self, key: str) -> Document:
		raw = self._read_raw(key)
		if raw is None:
			logger.debug("No document at %s, treating as empty", self.path_for(key))
			return Document()
		try:
			data = json.loads(raw.decode("utf-8"))
		except (UnicodeDecodeError, json.JSONDecodeError) as exc:
			raise StoreError(f"Invalid JSON in {self.path_for(key)}: {exc}") from exc
		return Document(data=data, version=_version_of(raw))

	def put(self, key: str, data: Any, expected_version: str | None = None) -> str:
		path = self.path_for(key)
		if expected_version is not None:
			raw = self._read_raw(key)
			self._check_version(key, _version_of(raw) if raw is not None else None, expected_version)

		payload = _serialize(data)
		try:
			path.parent.mkdir(parents=True, exist_ok=True)
			mode = _file_mode(path)
			fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
			try:
				with os.fdopen(fd, "wb") as f:
					f.write(payload)
				os.chmod(tmp_name, mode)
				os.replace(tmp_name, path)
			except BaseException:
				Path(tmp_name).unlink(missing_ok=True)
				raise
		except OSError as exc:
			raise StoreError(f"Failed to write {path}: {exc}") from exc
		return _version_of(payload)


class MemoryStore(DocumentStore):
	"""In-process store with the same contract as ``JsonFileStore``."""

	def __init__(self, initial: dict[str, Any] | None = None) -> None:
		self._docs: dict[str, bytes] = {}
		for key, data in (initial or {}).items():
			self._docs[key] = _serialize(data)

	def get(self, key: str) -> Document:
		raw = self._docs.get(key)
		if raw is None:
			return Document()
		return Document(data=json.loads(raw), version=_version_of(raw))

	def put(self, key: str, data: Any, expected_version: str | None = None) -> str:
		raw = self._docs.get(key)
		self._check_version(key, _version_of(raw) if raw is not None else None, expected_version)
		payload = _serialize(data)
		self._docs[key] = payload
		return _version_of(payload)
