"""Path resolution for workflow engine files

All engine state for a workspace lives under one directory:

    .bc-workflows/
    ├── sessions/
    │   ├── .gitignore
    │   ├── <session-id>.json
    │   └── <session-id>.events.jsonl
    ├── locks/
    │   └── <session-id>.lock
    └── reports/
        └── <session-id>-report.md
"""

from pathlib import Path
from typing import Optional

DEFAULT_ROOT_DIR_NAME = ".bc-workflows"


class WorkflowPaths:
    """Centralized path resolution for one workspace"""

    def __init__(self, base_dir: Optional[Path] = None, root_dir_name: str = DEFAULT_ROOT_DIR_NAME):
        """Initialize path resolver.

        Args:
            base_dir: Workspace directory. Defaults to the current directory.
            root_dir_name: Name of the engine directory inside the workspace
        """
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.engine_dir = self.base_dir / root_dir_name

    def sessions_dir(self) -> Path:
        """Returns .bc-workflows/sessions/"""
        return self.engine_dir / "sessions"

    def session_file(self, session_id: str) -> Path:
        """Returns .bc-workflows/sessions/<id>.json"""
        return self.sessions_dir() / f"{session_id}.json"

    def events_file(self, session_id: str) -> Path:
        """Returns .bc-workflows/sessions/<id>.events.jsonl"""
        return self.sessions_dir() / f"{session_id}.events.jsonl"

    def locks_dir(self) -> Path:
        return self.engine_dir / "locks"

    def lock_file(self, session_id: str) -> Path:
        """Returns .bc-workflows/locks/<id>.lock"""
        return self.locks_dir() / f"{session_id}.lock"

    def reports_dir(self) -> Path:
        return self.engine_dir / "reports"

    def report_file(self, session_id: str, fmt: str = "markdown") -> Path:
        """Returns .bc-workflows/reports/<id>-report.md (or .json)"""
        suffix = "json" if fmt == "json" else "md"
        return self.reports_dir() / f"{session_id}-report.{suffix}"

    def ensure_dirs(self) -> None:
        """Create the engine directory tree."""
        self.sessions_dir().mkdir(parents=True, exist_ok=True)
        self.locks_dir().mkdir(parents=True, exist_ok=True)
        self.reports_dir().mkdir(parents=True, exist_ok=True)
        gitignore = self.sessions_dir() / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text("*\n")
