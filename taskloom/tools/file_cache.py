"""Per-loop file content cache for read deduplication.

Holds the content of files a worker has read (or written) during one loop
invocation so repeated reads are served from memory.  It also tracks when
each file was last touched and its on-disk mtime at that point, which lets
the loop warn about files that changed underneath it.

One cache instance belongs to exactly one loop invocation; it is never
shared between sub-tasks.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from taskloom.logging import get_logger

log = get_logger(__name__)


@dataclass
class CachedFile:
    """Cached content plus access bookkeeping for one file."""

    path: str
    content: str
    first_step: int = 0
    last_read_step: int = 0
    last_edit_step: int | None = None
    read_count: int = 0
    mtime: float = 0.0
    truncated: bool = False

    @property
    def line_count(self) -> int:
        return len(self.content.splitlines())

    @property
    def last_access_step(self) -> int:
        return max(self.last_read_step, self.last_edit_step or 0)


@dataclass
class FileCacheStats:
    tracked: int = 0
    edited: int = 0
    reads: int = 0
    stale: list[str] = field(default_factory=list)


def slice_lines(content: str, start_line: int | None, end_line: int | None) -> str:
    """Return the 1-based inclusive line range with a location header."""
    lines = content.splitlines()
    total = len(lines)
    start = max(1, int(start_line or 1))
    end = min(total, int(end_line or total))
    if total == 0 or start > total:
        return f"[Lines {start}-{start} of {total} total]\n"
    if end < start:
        end = start
    body = "\n".join(lines[start - 1:end])
    return f"[Lines {start}-{end} of {total} total]\n{body}"


class FileContentCache:
    """Maps normalized file paths to cached content.

    Lookup priority:
        1. Exact normalized path match
        2. Filename-only match (when exactly one candidate exists)
    """

    def __init__(self, base_path: Path | str | None = None) -> None:
        self._base_path = Path(base_path).expanduser() if base_path else None
        self._entries: dict[str, CachedFile] = {}
        self._filename_index: dict[str, list[str]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, path: str) -> CachedFile | None:
        normalized = self._normalize(path)
        if not normalized:
            return None
        entry = self._entries.get(normalized)
        if entry is not None:
            return entry
        candidates = self._filename_index.get(Path(normalized).name, [])
        if len(candidates) == 1:
            return self._entries.get(candidates[0])
        return None

    def record_read(self, path: str, content: str, step: int) -> CachedFile:
        """Store content returned by a successful read."""
        normalized = self._normalize(path)
        entry = self._entries.get(normalized)
        if entry is None:
            entry = CachedFile(path=normalized, content=content, first_step=step)
            self._entries[normalized] = entry
            bucket = self._filename_index.setdefault(Path(normalized).name, [])
            if normalized not in bucket:
                bucket.append(normalized)
        else:
            entry.content = content
            entry.truncated = False
        entry.last_read_step = step
        entry.read_count += 1
        entry.mtime = self._mtime(normalized)
        log.debug("File cached", path=normalized, step=step, lines=entry.line_count)
        return entry

    def record_hit(self, path: str, step: int) -> None:
        entry = self.get(path)
        if entry is not None:
            entry.last_read_step = step
            entry.read_count += 1

    def record_edit(self, path: str, step: int, content: str | None = None) -> None:
        """Refresh bookkeeping after a successful write/edit.

        With full content (a whole-file write) the cache is refreshed;
        otherwise the stale entry is dropped so the next read hits disk.
        """
        normalized = self._normalize(path)
        if content is not None:
            entry = self.record_read(normalized, content, step)
            entry.read_count -= 1
            entry.last_edit_step = step
            return
        self.invalidate(normalized)

    def invalidate(self, path: str) -> None:
        normalized = self._normalize(path)
        if self._entries.pop(normalized, None) is None:
            return
        bucket = self._filename_index.get(Path(normalized).name, [])
        if normalized in bucket:
            bucket.remove(normalized)
        log.debug("File cache invalidated", path=normalized)

    def replace_content(self, path: str, content: str, truncated: bool = True) -> None:
        entry = self.get(path)
        if entry is not None:
            entry.content = content
            entry.truncated = truncated

    def items(self) -> list[CachedFile]:
        return list(self._entries.values())

    def recently_accessed(self, n: int = 5) -> list[CachedFile]:
        return sorted(self._entries.values(), key=lambda e: e.last_access_step, reverse=True)[:n]

    def stale_paths(self) -> list[str]:
        """Files whose on-disk mtime moved past the cached snapshot."""
        stale: list[str] = []
        for path, entry in self._entries.items():
            current = self._mtime(path)
            if current > 0 and current > entry.mtime:
                stale.append(path)
        return stale

    def stats(self) -> FileCacheStats:
        return FileCacheStats(
            tracked=len(self._entries),
            edited=sum(1 for e in self._entries.values() if e.last_edit_step is not None),
            reads=sum(e.read_count for e in self._entries.values()),
            stale=self.stale_paths(),
        )

    def clear(self) -> None:
        self._entries.clear()
        self._filename_index.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return len(self) > 0

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.get(path) is not None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _mtime(self, normalized: str) -> float:
        candidate = Path(normalized)
        if not candidate.is_absolute() and self._base_path is not None:
            candidate = self._base_path / candidate
        try:
            return os.stat(candidate).st_mtime
        except OSError:
            return 0.0

    @staticmethod
    def _normalize(path: str) -> str:
        """Normalize a path for consistent lookup.

        - Strips whitespace and quotes the LLM might wrap paths in
        - Drops ``.`` components and a leading ``./``
        - Keeps absolute paths absolute
        """
        raw = str(path or "").strip().strip("\"'`")
        if not raw:
            return ""
        parts = [p for p in Path(raw).parts if p not in ("", ".")]
        if not parts:
            return ""
        if parts[0] == "/":
            return "/" + "/".join(parts[1:])
        return "/".join(parts)
