"""File-region locks and the glob overlap heuristic.

A lock reserves a set of glob patterns for one in-progress queue entry.
A candidate entry conflicts with a lock when any of its globs overlaps any
glob the lock holds.

Overlap is a single-level containment test, not glob intersection: two
patterns overlap when they are identical or when one matches the other
read as a literal path. ``src/*.ts`` and ``src/sub/*.ts`` are therefore
judged disjoint even though both could expand to shared files. Callers
rely on that false-negative profile; do not widen it here.

Brace alternatives (``*.{ts,tsx}``, ``v{1..3}``) are expanded over the
whole pattern before matching. A leading ``/`` is kept as a root segment,
so ``/src/**`` and ``src/**`` never match each other.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from functools import lru_cache

from issue_dispatch.models import LockEntry, _now_iso
from issue_dispatch.store import DocumentStore, StoreError

logger = logging.getLogger(__name__)

LOCKS_KEY = "locks"

_ROOT = "/"
_RANGE_RE = re.compile(r"(-?\d+)\.\.(-?\d+)|([A-Za-z])\.\.([A-Za-z])")


def _split(value: str) -> tuple[str, ...]:
	value = value.strip().replace("\\", "/")
	if value.startswith("./"):
		value = value[2:]
	parts = tuple(seg for seg in value.split("/") if seg)
	if value.startswith("/"):
		return (_ROOT, *parts)
	return parts


def _brace_alternatives(body: str, commas: list[int]) -> list[str] | None:
	if commas:
		bounds = [-1, *commas, len(body)]
		return [body[bounds[i] + 1:bounds[i + 1]] for i in range(len(bounds) - 1)]
	m = _RANGE_RE.fullmatch(body)
	if m is None:
		return None
	if m.group(1) is not None:
		lo, hi = int(m.group(1)), int(m.group(2))
		step = 1 if hi >= lo else -1
		return [str(n) for n in range(lo, hi + step, step)]
	lo, hi = ord(m.group(3)), ord(m.group(4))
	step = 1 if hi >= lo else -1
	return [chr(c) for c in range(lo, hi + step, step)]


@lru_cache(maxsize=1024)
def expand_braces(pattern: str) -> tuple[str, ...]:
	"""Expand ``{a,b}`` and ``{1..3}`` groups into plain glob patterns.

	Groups nest. A group with neither a comma nor a range (``{a}``) and an
	unbalanced ``{`` are left as literal text.
	"""
	start = pattern.find("{")
	while start != -1:
		depth = 0
		end = -1
		commas: list[int] = []
		for i in range(start, len(pattern)):
			ch = pattern[i]
			if ch == "{":
				depth += 1
			elif ch == "}":
				depth -= 1
				if depth == 0:
					end = i
					break
			elif ch == "," and depth == 1:
				commas.append(i - start - 1)
		if end != -1:
			alternatives = _brace_alternatives(pattern[start + 1:end], commas)
			if alternatives is not None:
				prefix, suffix = pattern[:start], pattern[end + 1:]
				expanded: list[str] = []
				for alt in alternatives:
					for result in expand_braces(prefix + alt + suffix):
						if result not in expanded:
							expanded.append(result)
				return tuple(expanded)
		start = pattern.find("{", start + 1)
	return (pattern,)


@lru_cache(maxsize=1024)
def _match_parts(parts: tuple[str, ...], pat_parts: tuple[str, ...]) -> bool:
	if not pat_parts:
		return not parts
	head = pat_parts[0]
	if head == _ROOT or (parts and parts[0] == _ROOT):
		if not parts or parts[0] != head:
			return False
		return _match_parts(parts[1:], pat_parts[1:])
	if head == "**":
		rest = pat_parts[1:]
		while rest and rest[0] == "**":
			rest = rest[1:]
		if not rest:
			return True
		return any(_match_parts(parts[i:], rest) for i in range(len(parts) + 1))
	if not parts:
		return False
	if not fnmatch.fnmatchcase(parts[0], head):
		return False
	return _match_parts(parts[1:], pat_parts[1:])


def glob_match(pattern: str, path: str) -> bool:
	"""Match ``path`` against a shell-style glob, one path segment at a time.

	``*``, ``?`` and ``[...]`` stay within a segment; a ``**`` segment spans
	any number of segments. Leading dots are not special and matching is
	case-sensitive. ``path`` is taken literally, braces included.
	"""
	parts = _split(path)
	for alternative in expand_braces(pattern.strip()):
		pat_parts = _split(alternative)
		if pat_parts and _match_parts(parts, pat_parts):
			return True
	return False


def glob_overlaps(a: str, b: str) -> bool:
	"""Return True if two globs are judged to cover a shared region."""
	if not a or not b:
		return False
	if a == b:
		return True
	return glob_match(a, b) or glob_match(b, a)


def locks_for_files(files: list[str], locks: list[LockEntry]) -> list[LockEntry]:
	"""Return the locks whose reserved globs overlap any of ``files``.

	Each lock is reported at most once, in lock order. Scanning a lock stops
	at its first overlapping glob.
	"""
	conflicts: list[LockEntry] = []
	for lock in locks:
		if any(glob_overlaps(candidate, locked) for locked in lock.files for candidate in files):
			conflicts.append(lock)
	return conflicts


def remove_lock_for(locks: list[LockEntry], owner: int) -> list[LockEntry]:
	"""Return ``locks`` without any reservation held by ``owner``."""
	return [lock for lock in locks if lock.owner != owner]


class LockTable:
	"""Store-backed list of active locks. Order is not significant."""

	def __init__(self, store: DocumentStore, key: str = LOCKS_KEY) -> None:
		self.store = store
		self.key = key
		self.locks: list[LockEntry] = []
		self.version: str | None = None

	def load(self) -> list[LockEntry]:
		doc = self.store.get(self.key)
		raw = doc.data if isinstance(doc.data, list) else []
		try:
			self.locks = [LockEntry.from_dict(item) for item in raw]
		except ValueError as exc:
			raise StoreError(f"Invalid lock document {self.key!r}: {exc}") from exc
		self.version = doc.version
		return self.locks

	def save(self, check_version: bool = True) -> None:
		expected = self.version if check_version else None
		self.version = self.store.put(self.key, [lock.to_dict() for lock in self.locks], expected)

	def conflicts_for(self, files: list[str]) -> list[LockEntry]:
		return locks_for_files(files, self.locks)

	def held_by(self, owner: int) -> LockEntry | None:
		for lock in self.locks:
			if lock.owner == owner:
				return lock
		return None

	def acquire(
		self,
		owner: int,
		files: list[str],
		agent: str | None = "human",
		started_at: str | None = None,
	) -> LockEntry:
		lock = LockEntry(
			owner=owner,
			files=list(files),
			agent=agent,
			pr=None,
			started_at=started_at or _now_iso(),
		)
		self.locks.append(lock)
		return lock

	def release(self, owner: int) -> bool:
		"""Drop the owner's lock. Returns False if it held none."""
		remaining = remove_lock_for(self.locks, owner)
		released = len(remaining) != len(self.locks)
		self.locks = remaining
		if released:
			logger.info("Released lock held by #%d", owner)
		return released
