"""
Pattern Discovery Engine

Applies pattern definitions (inclusion regex, exclusion regex, context
window) to file contents, classifies each match with the definition's
ordered rules and attaches a suggested replacement.

Classification is first-match: rules are tried in declared order and the
first whose sub-pattern matches the span decides the instance type. Spans
no rule matches get the instance type ``other`` and need manual review.
"""

import bisect
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from .schema import ClassifierRule, PatternDefinition, PatternMatch, Transformation

logger = logging.getLogger(__name__)

OTHER_INSTANCE_TYPE = "other"
PENDING_TRANSFORMATION = "(transformation pending)"

# AL string literals; '' is an escaped quote inside one
_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")

# JavaScript-style flag letters used in definition data
FLAG_MAP = {
    'i': re.IGNORECASE,
    'm': re.MULTILINE,
    's': re.DOTALL,
    'x': re.VERBOSE,
}
# 'g' (every match) and 'u' (unicode) are always on in Python
IMPLICIT_FLAGS = frozenset('gu')

_JS_NAMED_GROUP = re.compile(r'\(\?<(?![=!])')
_PLACEHOLDER = re.compile(r'\{\{\s*(\w+)\s*\}\}')


def translate_flags(flags: str) -> int:
    """Convert a flag string such as ``"gi"`` into ``re`` flags."""
    result = 0
    for char in flags or "":
        if char in IMPLICIT_FLAGS:
            continue
        if char not in FLAG_MAP:
            raise ValueError(f"Unsupported regex flag '{char}'")
        result |= FLAG_MAP[char]
    return result


def compile_regex(pattern: str, flags: str = "") -> re.Pattern:
    """
    Compile a regex from definition data.

    ``(?<name>...)`` named groups are accepted as well as ``(?P<name>...)``.

    Raises:
        re.error: If the pattern is malformed
        ValueError: If the flag string has unsupported letters
    """
    return re.compile(_JS_NAMED_GROUP.sub('(?P<', pattern), translate_flags(flags))


def render_template(template: str, captures: dict[str, str]) -> Optional[str]:
    """
    Substitute ``{{name}}`` placeholders.

    Returns None if any placeholder has no captured value.
    """
    missing = [name for name in _PLACEHOLDER.findall(template) if captures.get(name) is None]
    if missing:
        return None
    return _PLACEHOLDER.sub(lambda m: captures[m.group(1)], template)


@dataclass
class CompiledRule:
    rule: ClassifierRule
    regex: re.Pattern


@dataclass
class CompiledPattern:
    """A pattern definition with all of its regexes compiled."""
    definition: PatternDefinition
    regex: re.Pattern
    exclude: Optional[re.Pattern]
    rules: list[CompiledRule]

    @classmethod
    def compile(cls, definition: PatternDefinition) -> "CompiledPattern":
        exclude = None
        if definition.exclude_regex:
            exclude = compile_regex(definition.exclude_regex, definition.flags)
        return cls(
            definition=definition,
            regex=compile_regex(definition.regex, definition.flags),
            exclude=exclude,
            rules=[CompiledRule(rule, compile_regex(rule.pattern, rule.flags)) for rule in definition.rules],
        )


@dataclass
class DiscoveryResult:
    """Outcome of scanning a set of files."""
    matches: list[PatternMatch] = field(default_factory=list)
    scanned_files: list[str] = field(default_factory=list)
    files_with_matches: int = 0
    errors: list[str] = field(default_factory=list)
    timed_out: bool = False


class _LineIndex:
    """Maps character offsets to 1-based line numbers."""

    def __init__(self, text: str):
        self.text = text
        self.starts = [0]
        for m in re.finditer('\n', text):
            self.starts.append(m.end())
        self.lines = text.split('\n')

    def line_of(self, offset: int) -> int:
        return bisect.bisect_right(self.starts, offset)

    def column_of(self, offset: int) -> int:
        return offset - self.starts[self.line_of(offset) - 1]

    def in_comment(self, offset: int) -> bool:
        """True if a // marker outside a string literal precedes offset on its line."""
        prefix = self.text[self.starts[self.line_of(offset) - 1]:offset]
        return '//' in _STRING_LITERAL.sub('', prefix)

    def window(self, line_number: int, context: int) -> list[str]:
        lo = max(0, line_number - 1 - context)
        return self.lines[lo:line_number + context]


class PatternDiscoveryEngine:
    """
    Scans files against pattern definitions.

    Malformed patterns and unreadable files are logged and skipped so
    one bad input cannot block a whole discovery run.
    """

    def __init__(self, max_file_size: int = 1_000_000, default_context_lines: int = 2):
        self.max_file_size = max_file_size
        self.default_context_lines = default_context_lines
        self._compiled: dict[str, CompiledPattern] = {}

    def compile_patterns(self, definitions: Iterable[PatternDefinition]) -> tuple[list[CompiledPattern], list[str]]:
        """Compile definitions, skipping malformed ones. Returns (compiled, errors)."""
        compiled, errors = [], []
        for definition in definitions:
            key = definition.model_dump_json()
            cached = self._compiled.get(key)
            if cached is None:
                try:
                    cached = CompiledPattern.compile(definition)
                except (re.error, ValueError) as e:
                    message = f"Skipping malformed pattern '{definition.id}': {e}"
                    logger.warning(message)
                    errors.append(message)
                    continue
                self._compiled[key] = cached
            compiled.append(cached)
        return compiled, errors

    def classify(self, span: str, pattern: CompiledPattern) -> tuple[Optional[ClassifierRule], dict[str, str]]:
        """Return the first rule matching the span and the rule's named captures."""
        for compiled_rule in pattern.rules:
            m = compiled_rule.regex.search(span)
            if m:
                captures = {k: v for k, v in m.groupdict().items() if v is not None}
                return compiled_rule.rule, captures
        return None, {}

    def scan_text(self, text: str, path: str, patterns: list[CompiledPattern]) -> list[PatternMatch]:
        """Scan already-loaded text. Results are ordered by pattern, then position."""
        index = _LineIndex(text)
        matches: list[PatternMatch] = []
        seen: set[tuple[str, int]] = set()

        for pattern in patterns:
            definition = pattern.definition
            for m in pattern.regex.finditer(text):
                span = m.group(0)
                if not span:
                    continue
                line_number = index.line_of(m.start())
                if (definition.id, line_number) in seen:
                    continue
                if pattern.exclude and pattern.exclude.search(span):
                    continue
                if definition.skip_comments and index.in_comment(m.start()):
                    continue
                seen.add((definition.id, line_number))
                matches.append(self._build_match(pattern, m, path, index, line_number))

        return matches

    def _build_match(self, pattern: CompiledPattern, m: re.Match, path: str,
                     index: _LineIndex, line_number: int) -> PatternMatch:
        definition = pattern.definition
        span = m.group(0)
        rule, rule_captures = self.classify(span, pattern)

        captures = {str(i): g for i, g in enumerate(m.groups(), start=1) if g is not None}
        captures.update({k: v for k, v in m.groupdict().items() if v is not None})
        captures.update(rule_captures)
        captures["match"] = span

        instance_type = rule.name if rule else OTHER_INSTANCE_TYPE
        transformation: Optional[Transformation] = definition.transformations.get(instance_type)
        suggestion = None
        if transformation is not None:
            suggestion = render_template(transformation.template, captures)

        auto_fixable = bool(rule and rule.auto_fixable and suggestion)
        requires_review = (
            not auto_fixable
            or suggestion is None
            or (transformation is not None and transformation.requires_review)
        )
        context_lines = definition.context_lines
        if context_lines is None:
            context_lines = self.default_context_lines
        first_line = span.split('\n', 1)[0]
        description = f"Line {line_number}: {first_line[:50]}{'...' if len(first_line) > 50 else ''}"

        return PatternMatch(
            pattern_id=definition.id,
            file=path,
            line_number=line_number,
            column=index.column_of(m.start()) + 1,
            matched_text=span,
            instance_type=instance_type,
            rule_name=rule.name if rule else None,
            suggested_action=rule.suggested_action if rule else "Review manually",
            suggested_replacement=suggestion or "",
            auto_fixable=auto_fixable,
            requires_manual_review=requires_review,
            context=index.window(line_number, context_lines),
            description=description,
        )

    def read_file(self, file_path: Path) -> Optional[str]:
        """Read a source file, or return None if it cannot be scanned."""
        try:
            size = file_path.stat().st_size
            if size > self.max_file_size:
                logger.warning(f"Skipping {file_path}: {size} bytes exceeds {self.max_file_size}")
                return None
            return file_path.read_text(encoding='utf-8-sig')
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Skipping unreadable file {file_path}: {e}")
            return None

    def discover(
        self,
        root: Path,
        paths: Iterable[str],
        definitions: Iterable[PatternDefinition],
        deadline: Optional[float] = None,
    ) -> DiscoveryResult:
        """
        Scan files (relative to root) against pattern definitions.

        Args:
            root: Scope root
            paths: Relative file paths, scanned in the given order
            definitions: Pattern definitions, applied in declared order
            deadline: time.monotonic() value after which scanning stops

        Returns:
            DiscoveryResult; ``timed_out`` is set if the deadline cut the run short
        """
        result = DiscoveryResult()
        compiled, errors = self.compile_patterns(definitions)
        result.errors.extend(errors)
        if not compiled:
            return result

        root = Path(root)
        for rel_path in paths:
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f"Pattern discovery timed out after {len(result.scanned_files)} files")
                result.timed_out = True
                break

            text = self.read_file(root / rel_path)
            result.scanned_files.append(rel_path)
            if text is None:
                result.errors.append(f"Unreadable file: {rel_path}")
                continue

            file_matches = self.scan_text(text, rel_path, compiled)
            if file_matches:
                result.files_with_matches += 1
                result.matches.extend(file_matches)

        return result

    @staticmethod
    def preview_change(match: PatternMatch) -> dict:
        """Before/after pair for a batch preview."""
        return {
            "file": match.file,
            "line": match.line_number,
            "instance_type": match.instance_type,
            "before": match.matched_text,
            "after": match.suggested_replacement or PENDING_TRANSFORMATION,
        }
