"""Tests for the pattern discovery engine"""

import re
import time

import pytest

from workflow_engine.definitions import DefinitionRegistry
from workflow_engine.patterns import (
    PENDING_TRANSFORMATION,
    PatternDiscoveryEngine,
    compile_regex,
    render_template,
    translate_flags,
)
from workflow_engine.schema import PatternDefinition

from conftest import ERRORS_CODEUNIT, MORE_ERRORS_CODEUNIT, write_files


@pytest.fixture
def error_patterns():
    registry = DefinitionRegistry()
    return registry.get("error-to-errorinfo-migration").pattern_discovery.patterns


@pytest.fixture
def discovery():
    return PatternDiscoveryEngine()


def scan(discovery, text, patterns, path="Test.Codeunit.al"):
    compiled, errors = discovery.compile_patterns(patterns)
    assert errors == []
    return discovery.scan_text(text, path, compiled)


class TestRegexHelpers:
    """Tests for flag translation and template rendering"""

    def test_translate_flags(self):
        """g and u are implicit, i/m/s map to re flags"""
        assert translate_flags("gi") == re.IGNORECASE
        assert translate_flags("gmu") == re.MULTILINE
        assert translate_flags("") == 0

    def test_translate_flags_rejects_unknown(self):
        """Unknown flag letters are an error"""
        with pytest.raises(ValueError):
            translate_flags("gy")

    def test_compile_accepts_angle_bracket_groups(self):
        """(?<name>...) groups are accepted"""
        regex = compile_regex(r"(?<word>\w+)", "")
        assert regex.match("hello").group("word") == "hello"

    def test_compile_keeps_lookbehind(self):
        """(?<= and (?<! are not rewritten"""
        regex = compile_regex(r"(?<!x)abc", "")
        assert regex.search("yabc")
        assert not regex.search("xabc")

    def test_render_template(self):
        """Placeholders are replaced by captures"""
        result = render_template("Error(ErrorInfo.Create({{ msg }}))", {"msg": "'Oops'"})
        assert result == "Error(ErrorInfo.Create('Oops'))"

    def test_render_template_missing_capture(self):
        """A missing capture yields no suggestion"""
        assert render_template("{{a}} {{b}}", {"a": "x"}) is None


class TestClassification:
    """Tests for first-match classification"""

    def test_literal_is_auto_fixable(self, discovery, error_patterns):
        """A string literal Error() gets a rendered ErrorInfo replacement"""
        matches = scan(discovery, "    Error('Customer is blocked');\n", error_patterns)

        assert len(matches) == 1
        match = matches[0]
        assert match.instance_type == "literal"
        assert match.auto_fixable is True
        assert match.requires_manual_review is False
        assert match.suggested_replacement == "Error(ErrorInfo.Create('Customer is blocked'))"
        assert match.line_number == 1

    def test_text_constant_requires_review(self, discovery, error_patterns):
        """A label argument is classified text_constant and needs review"""
        matches = scan(discovery, "Error(CustomerBlockedErr);\n", error_patterns)

        assert matches[0].instance_type == "text_constant"
        assert matches[0].auto_fixable is False
        assert matches[0].requires_manual_review is True
        assert matches[0].suggested_replacement == "Error(ErrorInfo.Create(CustomerBlockedErr))"

    def test_strsubstno_captures_params(self, discovery, error_patterns):
        """Placeholders and parameters both reach the template"""
        matches = scan(discovery, "Error('Customer %1 is blocked', CustNo);\n", error_patterns)

        assert matches[0].instance_type == "strsubstno"
        assert matches[0].suggested_replacement == (
            "Error(ErrorInfo.Create(StrSubstNo('Customer %1 is blocked', CustNo)))"
        )

    def test_getlasterror_classified_before_function_call(self, discovery, error_patterns):
        """GetLastErrorText() calls are not swallowed by the generic function rule"""
        matches = scan(discovery, "Error(GetLastErrorText());\n", error_patterns)
        assert matches[0].instance_type == "getlasterror"

    def test_unmatched_span_is_other(self, discovery):
        """Spans no rule matches get type 'other'"""
        pattern = PatternDefinition(
            id="p", regex=r"Message\([^)]*\)",
            rules=[{"name": "never", "pattern": "NEVER_MATCHES"}],
        )
        matches = scan(discovery, "Message('hi');", [pattern])

        assert matches[0].instance_type == "other"
        assert matches[0].requires_manual_review is True
        assert discovery.preview_change(matches[0])["after"] == PENDING_TRANSFORMATION

    def test_classification_is_deterministic(self, discovery, error_patterns):
        """Same input gives the same matches every time"""
        first = scan(discovery, ERRORS_CODEUNIT, error_patterns)
        second = scan(PatternDiscoveryEngine(), ERRORS_CODEUNIT, error_patterns)

        assert [m.model_dump() for m in first] == [m.model_dump() for m in second]
        assert [m.instance_type for m in first] == ["literal", "literal", "text_constant"]

    def test_first_declared_rule_wins(self, discovery):
        """When two rules match, the earlier one decides"""
        pattern = PatternDefinition(
            id="p", regex=r"Foo\(\d+\)",
            rules=[
                {"name": "first", "pattern": r"Foo"},
                {"name": "second", "pattern": r"Foo\(\d+\)"},
            ],
        )
        assert scan(discovery, "Foo(12)", [pattern])[0].instance_type == "first"


class TestScanText:
    """Tests for matching, exclusion and context"""

    def test_excluded_matches_are_skipped(self, discovery, error_patterns):
        """Commented-out calls and matches containing ErrorInfo.Create are not reported"""
        text = (
            "// Error('old message');\n"
            "Error(Msg, ErrorInfo.Create('x'));\n"
            "Error('real');\n"
        )
        matches = scan(discovery, text, error_patterns)

        assert [m.line_number for m in matches] == [3]

    def test_exclusion_checks_only_the_match(self, discovery, error_patterns):
        """A trailing comment does not hide a live call on the same line"""
        text = (
            "Error('Bad value'); // TODO: ErrorInfo.Create later\n"
            "Message('see http://example.com'); Error('after url');\n"
        )
        matches = scan(discovery, text, error_patterns)

        assert [m.line_number for m in matches] == [1, 2]
        assert matches[0].matched_text == "Error('Bad value')"

    def test_comment_skipping_can_be_disabled(self, discovery):
        commented = "// target\n"
        assert scan(discovery, commented, [PatternDefinition(id="p", regex="target")]) == []

        pattern = PatternDefinition(id="p", regex="target", skip_comments=False)
        assert [m.line_number for m in scan(discovery, commented, [pattern])] == [1]

    def test_one_match_per_line_per_pattern(self, discovery):
        """Two matches on one line produce one instance"""
        pattern = PatternDefinition(id="p", regex=r"x\d")
        matches = scan(discovery, "x1 x2\nx3\n", [pattern])
        assert [m.line_number for m in matches] == [1, 2]

    def test_context_window(self, discovery):
        """context_lines lines are kept on each side"""
        pattern = PatternDefinition(id="p", regex="target", context_lines=1)
        text = "a\nb\ntarget\nc\nd\n"
        match = scan(discovery, text, [pattern])[0]

        assert match.line_number == 3
        assert match.context == ["b", "target", "c"]

    def test_engine_default_context_window(self):
        """Patterns without context_lines use the engine default"""
        pattern = PatternDefinition(id="p", regex="target")
        text = "a\nb\ntarget\nc\nd\n"

        assert scan(PatternDiscoveryEngine(), text, [pattern])[0].context == ["a", "b", "target", "c", "d"]
        assert scan(PatternDiscoveryEngine(default_context_lines=0), text, [pattern])[0].context == ["target"]

    def test_column_is_one_based(self, discovery):
        pattern = PatternDefinition(id="p", regex="target")
        assert scan(discovery, "  target", [pattern])[0].column == 3

    def test_malformed_pattern_is_skipped(self, discovery):
        """A broken regex is reported, other patterns still run"""
        broken = PatternDefinition(id="broken", regex="(unclosed")
        good = PatternDefinition(id="good", regex="target")
        compiled, errors = discovery.compile_patterns([broken, good])

        assert [c.definition.id for c in compiled] == ["good"]
        assert len(errors) == 1
        assert "broken" in errors[0]


class TestDiscover:
    """Tests for scanning files on disk"""

    def test_discover_files(self, tmp_path, discovery, error_patterns):
        write_files(tmp_path, {
            "a.al": ERRORS_CODEUNIT,
            "b.al": MORE_ERRORS_CODEUNIT,
            "c.al": "codeunit 1 X { }",
        })
        result = discovery.discover(tmp_path, ["a.al", "b.al", "c.al"], error_patterns)

        assert result.scanned_files == ["a.al", "b.al", "c.al"]
        assert result.files_with_matches == 2
        assert len(result.matches) == 5
        assert result.timed_out is False

    def test_unreadable_file_is_skipped(self, tmp_path, discovery, error_patterns):
        """A missing file is an error entry, not an exception"""
        write_files(tmp_path, {"a.al": ERRORS_CODEUNIT})
        result = discovery.discover(tmp_path, ["missing.al", "a.al"], error_patterns)

        assert len(result.matches) == 3
        assert any("missing.al" in e for e in result.errors)

    def test_oversized_file_is_skipped(self, tmp_path, error_patterns):
        write_files(tmp_path, {"a.al": ERRORS_CODEUNIT})
        result = PatternDiscoveryEngine(max_file_size=10).discover(tmp_path, ["a.al"], error_patterns)
        assert result.matches == []

    def test_expired_deadline_stops_scan(self, tmp_path, discovery, error_patterns):
        """A deadline in the past scans nothing and reports a timeout"""
        write_files(tmp_path, {"a.al": ERRORS_CODEUNIT})
        result = discovery.discover(tmp_path, ["a.al"], error_patterns, deadline=time.monotonic() - 1)

        assert result.timed_out is True
        assert result.scanned_files == []
