"""
Unit Tests for SourceFileSet
"""
import pytest

from overskill.core.exceptions import FileSetError
from overskill.services.source_file_set import SourceFile, SourceFileSet, normalize_path


class TestNormalizePath:
    """Test path normalization"""

    def test_strips_leading_dot_slash(self):
        assert normalize_path("./src/App.tsx") == "src/App.tsx"

    def test_strips_leading_slash_and_backslashes(self):
        assert normalize_path("/src\\components\\Header.tsx") == "src/components/Header.tsx"

    def test_collapses_inner_segments(self):
        assert normalize_path("src/pages/../App.tsx") == "src/App.tsx"

    def test_rejects_empty_path(self):
        with pytest.raises(FileSetError):
            normalize_path("  ")

    def test_rejects_escaping_path(self):
        with pytest.raises(FileSetError) as exc_info:
            normalize_path("../secrets.env")
        assert exc_info.value.code == "INVALID_FILE_SET"


class TestSourceFile:
    """Test SourceFile size accounting"""

    def test_size_is_utf8_byte_length(self):
        source = SourceFile("src/i18n.ts", "export const hi = 'नमस्ते';")
        assert source.size == len("export const hi = 'नमस्ते';".encode("utf-8"))
        assert source.size > len(source.content)

    def test_lines_split_on_newline(self):
        assert SourceFile("a.ts", "one\ntwo\n").lines == ["one", "two", ""]


class TestSourceFileSet:
    """Test the file collection"""

    def test_preserves_insertion_order(self):
        files = SourceFileSet({"b.ts": "b", "a.ts": "a", "c.ts": "c"})
        assert files.paths() == ["b.ts", "a.ts", "c.ts"]

    def test_duplicate_path_is_rejected(self):
        files = SourceFileSet({"src/App.tsx": "x"})
        with pytest.raises(FileSetError):
            files.add("./src/App.tsx", "y")

    def test_replace_keeps_position(self):
        files = SourceFileSet({"a.ts": "1", "b.ts": "2", "c.ts": "3"})
        files.replace("b.ts", "changed")
        assert files.paths() == ["a.ts", "b.ts", "c.ts"]
        assert files.get("b.ts").content == "changed"

    def test_replace_missing_file_raises(self):
        with pytest.raises(FileSetError):
            SourceFileSet().replace("missing.ts", "")

    def test_upsert_adds_then_replaces(self):
        files = SourceFileSet()
        files.upsert("src/a.ts", "1")
        files.upsert("src/a.ts", "2")
        assert len(files) == 1
        assert files.get("src/a.ts").content == "2"

    def test_remove(self):
        files = SourceFileSet({"a.ts": "1", "b.ts": "2"})
        files.remove("a.ts")
        assert "a.ts" not in files
        assert len(files) == 1

    def test_copy_is_independent(self):
        original = SourceFileSet({"a.ts": "1"})
        clone = original.copy()
        clone.replace("a.ts", "2")
        clone.add("b.ts", "3")

        assert original.get("a.ts").content == "1"
        assert "b.ts" not in original

    def test_get_with_invalid_path_returns_none(self):
        assert SourceFileSet({"a.ts": "1"}).get("../a.ts") is None

    def test_total_size(self):
        files = SourceFileSet({"a.ts": "12345", "b.ts": "123"})
        assert files.total_size == 8

    def test_from_records(self):
        files = SourceFileSet.from_records([
            {"path": "src/App.tsx", "content": "app"},
            {"path": "README.md"},
        ])
        assert files.to_dict() == {"src/App.tsx": "app", "README.md": ""}

    def test_equality_compares_paths_and_content(self):
        assert SourceFileSet({"a.ts": "1"}) == SourceFileSet({"./a.ts": "1"})
        assert SourceFileSet({"a.ts": "1"}) != SourceFileSet({"a.ts": "2"})

    def test_iteration_is_a_snapshot(self):
        files = SourceFileSet({"a.ts": "1", "b.ts": "2"})
        for source in files:
            files.remove(source.path)
        assert len(files) == 0
