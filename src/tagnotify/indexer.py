"""
Scanning a folder of Markdown notes for watched date fields.

Dates come from two places:

- YAML frontmatter keys named after a watched field
  (``birthday: 1985-02-20``)
- inline tags anywhere in the body (``#due:2025-10-01T14:00``)
"""

import asyncio
import re
import time
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Optional

import yaml
from dateutil.parser import isoparse, ParserError
from dateutil.parser import parse as dateutil_parse

from .errors import IndexUnavailable
from .index import DocumentIndex
from .model import DocumentEntry, ExtractedDate
from .shared import log_msg

FRONTMATTER_REGEX = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
INLINE_TAG_REGEX = re.compile(r"(?<![\w&/])#([A-Za-z0-9_-]+):(\S+)")
HEADING_REGEX = re.compile(r"^#\s+(.+?)\s*#*\s*$", re.MULTILINE)


def split_frontmatter(text: str) -> tuple[dict, str]:
    """Return (frontmatter mapping, body). Malformed YAML counts as none."""
    match = FRONTMATTER_REGEX.match(text)
    if not match:
        return {}, text
    body = text[match.end():]
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        log_msg(f"ignoring malformed frontmatter: {e}")
        return {}, body
    return (data if isinstance(data, dict) else {}), body


def parse_date_value(value, formats: Iterable[str] = ()) -> Optional[str]:
    """
    Normalize a frontmatter or tag value to an ISO 8601 string: 'YYYY-MM-DD'
    for dates, full isoformat for date-times. Returns None when the value is
    not recognizably a date.
    """
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        return None
    text = value.strip().strip("\"'")
    if not text or not any(c.isdigit() for c in text):
        return None

    try:
        parsed = isoparse(text)
        return _iso(parsed, text)
    except (ValueError, OverflowError):
        pass

    for fmt in formats:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return _iso(parsed, fmt)

    try:
        parsed = dateutil_parse(text)
    except (ParserError, ValueError, OverflowError):
        return None
    return _iso(parsed, text)


def _iso(parsed: datetime, source: str) -> str:
    has_time = ":" in source or "%H" in source
    if not has_time and parsed.hour == parsed.minute == parsed.second == 0:
        return parsed.date().isoformat()
    return parsed.isoformat()


class VaultIndexer:
    """
    Builds and maintains a ``DocumentIndex`` for the notes under ``root``.

    Only fields some rule watches are extracted, so ``watched_fields`` must
    be refreshed when rules change.
    """

    def __init__(
        self,
        root: Path | str,
        index: Optional[DocumentIndex] = None,
        watched_fields: Iterable[str] = (),
        scope: str = "entire-vault",
        included_folders: Iterable[str] = (),
        excluded_folders: Iterable[str] = ("templates", "archive"),
        date_formats: Iterable[str] = (),
        batch_size: int = 10,
    ):
        self.root = Path(root).expanduser() if root else None
        self.index = index if index is not None else DocumentIndex()
        self.watched_fields = set(watched_fields)
        self.scope = scope
        self.included_folders = [f.strip("/") for f in included_folders if f.strip("/")]
        self.excluded_folders = [f.strip("/") for f in excluded_folders if f.strip("/")]
        self.date_formats = list(date_formats)
        self.batch_size = max(int(batch_size), 1)
        self.in_progress = False

    @classmethod
    def from_config(cls, index_config, index=None, watched_fields=()) -> "VaultIndexer":
        return cls(
            index_config.root,
            index=index,
            watched_fields=watched_fields,
            scope=index_config.scope,
            included_folders=index_config.included_folders,
            excluded_folders=index_config.excluded_folders,
            date_formats=index_config.date_formats,
            batch_size=index_config.batch_size,
        )

    def set_watched_fields(self, fields: Iterable[str]) -> None:
        self.watched_fields = set(fields)

    def _require_root(self) -> Path:
        if self.root is None or not self.root.is_dir():
            raise IndexUnavailable(f"vault folder not found: {self.root or '(not set)'}")
        return self.root

    def relative_path(self, path: Path) -> str:
        return path.relative_to(self._require_root()).as_posix()

    def _in_folder(self, rel_path: str, folder: str) -> bool:
        return rel_path == folder or rel_path.startswith(folder + "/")

    def should_index(self, rel_path: str) -> bool:
        if not rel_path.endswith(".md"):
            return False
        if any(self._in_folder(rel_path, f) for f in self.excluded_folders):
            return False
        if self.scope == "selected-folders" and self.included_folders:
            return any(self._in_folder(rel_path, f) for f in self.included_folders)
        return True

    def markdown_files(self) -> list[Path]:
        root = self._require_root()
        return sorted(
            p
            for p in root.rglob("*.md")
            if p.is_file() and self.should_index(self.relative_path(p))
        )

    async def index_vault(self) -> DocumentIndex:
        """
        Rebuild the whole index, yielding to the event loop between batches.
        A regeneration running in between simply sees a partial index.

        Raises:
            IndexUnavailable: the vault folder does not exist.
        """
        if self.in_progress:
            log_msg("indexing already in progress")
            return self.index
        self.in_progress = True
        try:
            files = self._start_pass()
            seen: set[str] = set()
            for start in range(0, len(files), self.batch_size):
                self._index_batch(files[start : start + self.batch_size], seen)
                if start + self.batch_size < len(files):
                    await asyncio.sleep(0)
            self._finish_pass(seen)
        finally:
            self.in_progress = False
        return self.index

    def reindex(self) -> DocumentIndex:
        """Blocking variant of ``index_vault`` for command line use."""
        files = self._start_pass()
        seen: set[str] = set()
        self._index_batch(files, seen)
        self._finish_pass(seen)
        return self.index

    def _start_pass(self) -> list[Path]:
        try:
            files = self.markdown_files()
        except IndexUnavailable as e:
            self.index.unavailable = str(e)
            log_msg(f"index unavailable: {e}")
            raise
        self.index.unavailable = None
        log_msg(f"indexing {len(files)} markdown files under {self.root}")
        return files

    def _index_batch(self, paths: list[Path], seen: set[str]) -> None:
        for path in paths:
            entry = self.index_file(path)
            if entry is not None:
                seen.add(entry.path)

    def _finish_pass(self, seen: set[str]) -> None:
        for stale in [e.path for e in self.index if e.path not in seen]:
            self.index.remove(stale)
        self.index.last_indexed = time.time()
        log_msg(f"indexed {len(self.index)} notes")

    def index_file(self, path: Path | str) -> Optional[DocumentEntry]:
        """Index one file; unreadable files are logged and dropped."""
        path = Path(path)
        if not path.is_absolute():
            path = self._require_root() / path
        rel_path = self.relative_path(path)
        try:
            text = path.read_text(encoding="utf-8")
            mtime = path.stat().st_mtime
        except (OSError, UnicodeDecodeError) as e:
            log_msg(f"error indexing {rel_path}: {e}")
            self.index.remove(rel_path)
            return None
        entry = self.extract(rel_path, text, mtime)
        self.index.set(entry)
        return entry

    def extract(self, rel_path: str, text: str, mtime: float = 0.0) -> DocumentEntry:
        frontmatter, body = split_frontmatter(text)
        dates: list[ExtractedDate] = []

        for name in sorted(self.watched_fields):
            if name not in frontmatter or frontmatter[name] in (None, ""):
                continue
            raw = frontmatter[name]
            values = raw if isinstance(raw, list) else [raw]
            for value in values:
                iso = parse_date_value(value, self.date_formats)
                if iso is None:
                    log_msg(f"{rel_path}: could not parse {name}: {value!r}")
                    continue
                dates.append(
                    ExtractedDate(name, iso, str(value), source="frontmatter")
                )

        for match in INLINE_TAG_REGEX.finditer(body):
            name, raw = match.group(1), match.group(2)
            if name not in self.watched_fields:
                continue
            iso = parse_date_value(raw, self.date_formats)
            if iso is None:
                log_msg(f"{rel_path}: could not parse #{name}:{raw}")
                continue
            dates.append(ExtractedDate(name, iso, raw, source="inline-tag"))

        return DocumentEntry(
            path=rel_path,
            title=self.extract_title(rel_path, frontmatter, body),
            dates=dates,
            last_modified=mtime,
        )

    def extract_title(self, rel_path: str, frontmatter: dict, body: str) -> str:
        title = frontmatter.get("title")
        if isinstance(title, str) and title.strip():
            return title.strip()
        heading = HEADING_REGEX.search(body)
        if heading:
            return heading.group(1)
        return Path(rel_path).stem

    def update_file(self, rel_path: str) -> Optional[DocumentEntry]:
        """Re-index one vault-relative path, dropping it if it no longer qualifies."""
        full = self._require_root() / rel_path
        if self.should_index(rel_path) and full.is_file():
            return self.index_file(full)
        self.index.remove(rel_path)
        return None

    def scan_changes(self) -> tuple[list[str], list[str]]:
        """
        Compare the files on disk with the index.
        Returns (new or modified paths, removed paths), both relative.
        """
        current = {self.relative_path(p): p for p in self.markdown_files()}
        changed: list[str] = []
        for rel_path, path in current.items():
            entry = self.index.get(rel_path)
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if entry is None or mtime != entry.last_modified:
                changed.append(rel_path)
        removed = [e.path for e in self.index if e.path not in current]
        return changed, removed
