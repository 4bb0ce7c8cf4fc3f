"""Tests for the file scanner"""

import pytest

from workflow_engine.error_handling import ConfigurationError
from workflow_engine.scanner import FileScanner, detect_object_type, matches_exclusion

from conftest import write_files


@pytest.fixture
def workspace(tmp_path):
    return write_files(tmp_path, {
        "src/Customer.Table.al": "table 1 a { }",
        "src/CustomerExt.TableExtension.al": "tableextension 2 b extends a { }",
        "src/Sales.Codeunit.al": "codeunit 3 c { }",
        "src/test/SalesTest.Codeunit.al": "codeunit 4 d { }",
        "README.md": "# readme",
        ".bc-workflows/sessions/old.al": "stale",
    })


class TestObjectTypes:

    def test_detect_object_type(self):
        assert detect_object_type("src/Customer.Table.al") == "Table"
        assert detect_object_type("src/CustomerExt.TableExtension.al") == "TableExtension"
        assert detect_object_type("src/Card.PageExtension.al") == "PageExtension"
        assert detect_object_type("notes.txt") is None


class TestExclusion:

    def test_double_star_prefix_matches_root(self):
        """**/test/** excludes test/ at the root and below"""
        assert matches_exclusion("test/a.al", "**/test/**")
        assert matches_exclusion("src/test/a.al", "**/test/**")
        assert not matches_exclusion("src/tests.al", "**/test/**")


class TestFileScanner:
    """Tests for FileScanner.scan"""

    def test_include_and_exclude(self, workspace):
        files = FileScanner().scan(workspace, ["**/*.al"], ["**/test/**"])

        assert [f.path for f in files] == [
            "src/Customer.Table.al",
            "src/CustomerExt.TableExtension.al",
            "src/Sales.Codeunit.al",
        ]
        assert files[0].object_type == "Table"
        assert files[0].size == len("table 1 a { }")

    def test_engine_directory_never_scanned(self, workspace):
        """Files under .bc-workflows are ignored"""
        files = FileScanner().scan(workspace, ["**/*.al"])
        assert not any(f.path.startswith(".bc-workflows") for f in files)

    def test_overlapping_globs_deduplicated(self, workspace):
        files = FileScanner().scan(workspace, ["src/*.al", "**/*.al"], ["**/test/**"])
        paths = [f.path for f in files]
        assert len(paths) == len(set(paths)) == 3

    def test_max_files(self, workspace):
        files = FileScanner().scan(workspace, ["**/*.al"], ["**/test/**"], max_files=2)
        assert len(files) == 2

    def test_priority_patterns(self, workspace):
        """Files matching earlier priority patterns come first, ties keep order"""
        files = FileScanner().scan(workspace, ["**/*.al"], ["**/test/**"], priority_patterns=["sales"])
        assert [f.path for f in files] == [
            "src/Sales.Codeunit.al",
            "src/Customer.Table.al",
            "src/CustomerExt.TableExtension.al",
        ]

    def test_oversized_files_skipped(self, workspace):
        files = FileScanner(max_file_size=16).scan(workspace, ["**/*.al"], ["**/test/**"])
        assert [f.path for f in files] == ["src/Customer.Table.al", "src/Sales.Codeunit.al"]

    def test_root_must_be_directory(self, tmp_path):
        with pytest.raises(ConfigurationError):
            FileScanner().scan(tmp_path / "missing", ["**/*.al"])

    @pytest.mark.parametrize("pattern", ["/etc/*.al", "~/x.al", "../*.al", ""])
    def test_escaping_globs_rejected(self, workspace, pattern):
        with pytest.raises(ConfigurationError):
            FileScanner().scan(workspace, [pattern])
