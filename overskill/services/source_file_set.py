"""
Source File Set - the named-file collection that every pipeline stage shares.

Files are replaced whole; there are no partial patches below the file level.
Insertion order is preserved so builds materialize files deterministically.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional
import posixpath

from overskill.core.exceptions import FileSetError


def normalize_path(path: str) -> str:
    """Normalize a file path to a relative, slash-separated form"""
    if path is None:
        raise FileSetError("File path is required")
    cleaned = path.replace("\\", "/").strip()
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    cleaned = cleaned.lstrip("/")
    if not cleaned:
        raise FileSetError("File path must not be empty", path=path)
    normalized = posixpath.normpath(cleaned)
    if normalized.startswith("..") or normalized == ".":
        raise FileSetError(f"File path escapes the source root: {path}", path=path)
    return normalized


@dataclass(frozen=True)
class SourceFile:
    """A single source file; size is the UTF-8 byte length of the content"""
    path: str
    content: str
    size: int = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "size", len(self.content.encode("utf-8")))

    @property
    def lines(self) -> List[str]:
        return self.content.split("\n")


class SourceFileSet:
    """
    Ordered mapping of path -> SourceFile.

    Paths are unique and never empty. Replacing a file keeps its position.
    """

    def __init__(self, files: Optional[Mapping[str, str]] = None):
        self._files: Dict[str, SourceFile] = {}
        for path, content in (files or {}).items():
            self.add(path, content)

    @classmethod
    def from_dict(cls, files: Mapping[str, str]) -> "SourceFileSet":
        return cls(files)

    @classmethod
    def from_records(cls, records: List[Dict[str, str]]) -> "SourceFileSet":
        """Build from persisted records shaped like {"path": ..., "content": ...}"""
        file_set = cls()
        for record in records:
            file_set.add(record["path"], record.get("content", ""))
        return file_set

    def add(self, path: str, content: str) -> SourceFile:
        """Add a new file. Adding an existing path is an error."""
        key = normalize_path(path)
        if key in self._files:
            raise FileSetError(f"Duplicate file path: {key}", path=key)
        source_file = SourceFile(key, content)
        self._files[key] = source_file
        return source_file

    def replace(self, path: str, content: str) -> SourceFile:
        """Replace the whole content of an existing file"""
        key = normalize_path(path)
        if key not in self._files:
            raise FileSetError(f"File not found: {key}", path=key)
        source_file = SourceFile(key, content)
        self._files[key] = source_file
        return source_file

    def upsert(self, path: str, content: str) -> SourceFile:
        key = normalize_path(path)
        if key in self._files:
            return self.replace(key, content)
        return self.add(key, content)

    def remove(self, path: str) -> None:
        key = normalize_path(path)
        if key not in self._files:
            raise FileSetError(f"File not found: {key}", path=key)
        del self._files[key]

    def get(self, path: str) -> Optional[SourceFile]:
        try:
            return self._files.get(normalize_path(path))
        except FileSetError:
            return None

    def copy(self) -> "SourceFileSet":
        clone = SourceFileSet()
        clone._files = dict(self._files)
        return clone

    def paths(self) -> List[str]:
        return list(self._files.keys())

    def to_dict(self) -> Dict[str, str]:
        return {path: f.content for path, f in self._files.items()}

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self._files.values())

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.get(path) is not None

    def __iter__(self) -> Iterator[SourceFile]:
        return iter(list(self._files.values()))

    def __len__(self) -> int:
        return len(self._files)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SourceFileSet):
            return NotImplemented
        return list(self._files.items()) == list(other._files.items())

    def __repr__(self) -> str:
        return f"SourceFileSet({len(self._files)} files, {self.total_size} bytes)"
