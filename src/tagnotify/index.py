from typing import Iterable, Iterator, Mapping, Optional

from .errors import IndexUnavailable
from .model import DocumentEntry, ExtractedDate


class DocumentIndex:
    """
    Extracted dates per document path.

    The schedule generator only ever reads a ``snapshot()``; the indexer and
    host events write through ``set``/``remove``.
    """

    def __init__(self, entries: Optional[Iterable[DocumentEntry]] = None):
        self._entries: dict[str, DocumentEntry] = {}
        self.last_indexed: float = 0.0
        # set while the source of the index cannot be read
        self.unavailable: Optional[str] = None
        for entry in entries or []:
            self.set(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __iter__(self) -> Iterator[DocumentEntry]:
        return iter(list(self._entries.values()))

    def get(self, path: str) -> Optional[DocumentEntry]:
        return self._entries.get(path)

    def set(self, entry: DocumentEntry) -> None:
        self._entries[entry.path] = entry

    def add(
        self, path: str, title: str, dates: Iterable[tuple[str, str]] = ()
    ) -> DocumentEntry:
        """Convenience for callers holding plain (field, iso value) pairs."""
        entry = DocumentEntry(
            path=path,
            title=title,
            dates=[ExtractedDate(field=f, value=v, raw_value=v) for f, v in dates],
        )
        self.set(entry)
        return entry

    def remove(self, path: str) -> bool:
        return self._entries.pop(path, None) is not None

    def rename(self, old_path: str, new_path: str) -> None:
        entry = self._entries.pop(old_path, None)
        if entry is not None:
            entry.path = new_path
            self._entries[new_path] = entry

    def snapshot(self) -> dict[str, DocumentEntry]:
        """
        Shallow copy of the path -> entry mapping.

        Raises:
            IndexUnavailable: the index has been marked unavailable.
        """
        if self.unavailable:
            raise IndexUnavailable(self.unavailable)
        return dict(self._entries)

    def documents_with_field(self, name: str) -> list[DocumentEntry]:
        return [e for e in self._entries.values() if e.dates_for(name)]


def as_mapping(index: "DocumentIndex | Mapping[str, DocumentEntry]") -> Mapping[str, DocumentEntry]:
    if isinstance(index, DocumentIndex):
        return index.snapshot()
    return index
