"""
File Scanner

Builds the initial file inventory of a session: include globs relative to
the scope root, exclusion globs, de-duplication, a file-count cap,
priority ordering and a coarse AL object-type classification.
"""

import logging
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Optional

from .error_handling import ConfigurationError

logger = logging.getLogger(__name__)

# Checked in order against the lower-cased file name
AL_OBJECT_TYPES = [
    ('.pageextension.', 'PageExtension'),
    ('.tableextension.', 'TableExtension'),
    ('.codeunit.', 'Codeunit'),
    ('.page.', 'Page'),
    ('.table.', 'Table'),
    ('.report.', 'Report'),
    ('.query.', 'Query'),
    ('.xmlport.', 'XMLport'),
    ('.enum.', 'Enum'),
    ('.interface.', 'Interface'),
    ('.controladdin.', 'ControlAddIn'),
    ('.permissionset.', 'PermissionSet'),
    ('.profile.', 'Profile'),
]

ALWAYS_EXCLUDED_DIRS = {'.git', '.bc-workflows'}


@dataclass
class ScannedFile:
    """One inventory entry produced by the scanner."""
    path: str  # POSIX path relative to the scope root
    size: int
    object_type: Optional[str] = None


def detect_object_type(path: str) -> Optional[str]:
    """Detect the AL object type from a file name such as ``Customer.Table.al``."""
    name = Path(path).name.lower()
    for marker, object_type in AL_OBJECT_TYPES:
        if marker in name:
            return object_type
    return None


def validate_glob_pattern(pattern: str) -> None:
    """Reject globs that would escape the scope root."""
    if not pattern:
        raise ConfigurationError("Empty glob pattern")
    if pattern.startswith('/') or pattern.startswith('~'):
        raise ConfigurationError(f"Glob pattern must be relative: {pattern}", pattern=pattern)
    if '..' in Path(pattern).parts:
        raise ConfigurationError(f"Glob pattern must not contain '..': {pattern}", pattern=pattern)


def matches_exclusion(rel_path: str, pattern: str) -> bool:
    """
    Match a relative POSIX path against an exclusion glob.

    ``**/`` at the start of a pattern also matches at the root, so
    ``**/test/**`` excludes both ``test/a.al`` and ``src/test/a.al``.
    """
    if fnmatchcase(rel_path, pattern):
        return True
    return pattern.startswith('**/') and fnmatchcase(rel_path, pattern[3:])


class FileScanner:
    """Enumerates the files a session will track."""

    def __init__(self, max_file_size: int = 1_000_000):
        self.max_file_size = max_file_size

    def scan(
        self,
        root: Path,
        include: list[str],
        exclude: Optional[list[str]] = None,
        max_files: Optional[int] = None,
        priority_patterns: Optional[list[str]] = None,
    ) -> list[ScannedFile]:
        """
        Enumerate files under root.

        Args:
            root: Scope root directory
            include: Include globs, relative to root
            exclude: Exclusion globs
            max_files: Stop after this many files
            priority_patterns: Case-insensitive path substrings; files matching
                an earlier entry sort first, unmatched files keep their order last

        Returns:
            Inventory entries in stable order

        Raises:
            ConfigurationError: If root is not a directory or a glob is invalid
        """
        root = Path(root)
        if not root.is_dir():
            raise ConfigurationError(f"Scope root is not a directory: {root}", scope_root=str(root))

        exclude = exclude or []
        for pattern in list(include) + list(exclude):
            validate_glob_pattern(pattern)

        files: list[ScannedFile] = []
        seen: set[str] = set()

        for pattern in include:
            for path in sorted(root.glob(pattern)):
                if max_files is not None and len(files) >= max_files:
                    break
                if not path.is_file():
                    continue
                rel_path = path.relative_to(root).as_posix()
                if rel_path in seen:
                    continue
                if ALWAYS_EXCLUDED_DIRS.intersection(Path(rel_path).parts[:-1]):
                    continue
                if any(matches_exclusion(rel_path, ex) for ex in exclude):
                    continue

                try:
                    size = path.stat().st_size
                except OSError as e:
                    logger.warning(f"Skipping {rel_path}: {e}")
                    continue
                if size > self.max_file_size:
                    logger.warning(f"Skipping {rel_path}: {size} bytes exceeds {self.max_file_size}")
                    continue

                seen.add(rel_path)
                files.append(ScannedFile(rel_path, size, detect_object_type(rel_path)))

        if priority_patterns:
            lowered = [p.lower() for p in priority_patterns]

            def priority(entry: ScannedFile) -> int:
                name = entry.path.lower()
                for i, p in enumerate(lowered):
                    if p in name:
                        return i
                return len(lowered)

            # sorted() is stable, so ties keep discovery order
            files = sorted(files, key=priority)

        logger.info(f"Scanned {root}: {len(files)} files")
        return files
