"""
Workflow Tools

Agent-facing tool surface: workflow_start, workflow_next, workflow_progress,
workflow_batch, workflow_complete, workflow_status, workflow_cancel and
workflow_list. Each tool takes a JSON-like argument dict and returns a
JSON-serializable dict.

Tool boundaries never raise. Engine errors come back as
``{"is_error": True, "error": <code>, "message": ..., "details": ...}``.
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Optional

from .batch import BatchOperationExecutor
from .config import EngineConfig
from .definitions import DefinitionRegistry
from .error_handling import WorkflowEngineError
from .path_resolver import WorkflowPaths
from .session_manager import WorkflowSessionManager
from .storage import create_store
from .tokens import TokenStore

logger = logging.getLogger(__name__)


class ToolExecutionError(WorkflowEngineError):
    """Raised when tool arguments are missing or malformed"""
    code = "invalid_arguments"


def _require(args: Dict[str, Any], name: str) -> Any:
    value = args.get(name)
    if value is None or value == "":
        raise ToolExecutionError(f"Missing required argument: {name}", field=name)
    return value


class WorkflowEngine:
    """
    One fully wired engine instance.

    Owns its definition registry, session store and token store, so two
    engines in one process never share state.
    """

    def __init__(self, config: Optional[EngineConfig] = None, base_dir: Optional[Path] = None,
                 registry: Optional[DefinitionRegistry] = None):
        self.config = config or EngineConfig()
        self.paths = WorkflowPaths(base_dir, root_dir_name=self.config.storage.root_dir_name)
        self.registry = registry or DefinitionRegistry()
        for layer_dir in self.config.definitions.layer_dirs:
            self.registry.load_directory(Path(layer_dir))

        self.store = create_store(
            self.config.storage.backend,
            paths=self.paths,
            lock_timeout=self.config.storage.lock_timeout_seconds,
        )
        self.tokens = TokenStore(self.config.tokens.retention_cap)
        self.manager = WorkflowSessionManager(
            self.registry,
            self.store,
            config=self.config,
            paths=self.paths if self.config.storage.backend == "file" else None,
        )
        self.batch = BatchOperationExecutor(self.manager, self.tokens)


class ToolExecutor(ABC):
    """Base class for one workflow tool."""

    def __init__(self, engine: WorkflowEngine):
        self.engine = engine

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name"""
        pass

    @abstractmethod
    def execute(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run the tool.

        Raises:
            WorkflowEngineError: On invalid input or state
        """
        pass


class StartTool(ToolExecutor):
    """
    Args:
        workflow_type: Registered workflow type
        scope_root: Directory to analyze (default: current directory)
        options: Option bag (include_patterns, max_files, source_version, ...)
        run_autonomous: Run autonomous phases during start (default: true)
        timeout_ms: Budget for autonomous phases
    """

    @property
    def name(self) -> str:
        return "workflow_start"

    def execute(self, args: Dict[str, Any]) -> Dict[str, Any]:
        manager = self.engine.manager
        result = manager.start(
            _require(args, "workflow_type"),
            args.get("scope_root") or ".",
            options=args.get("options"),
            run_autonomous=args.get("run_autonomous", True),
            timeout_ms=args.get("timeout_ms"),
        )
        session = result.session
        output = {
            "session_id": session.id,
            "status": session.status.value,
            "workflow_type": session.workflow_type,
            "workflow_name": session.workflow_name,
            "specialist": session.specialist,
            "phases": [
                {"id": p.id, "name": p.name, "mode": p.mode.value, "status": p.status.value}
                for p in session.phases
            ],
            "file_inventory_summary": {
                "total": len(session.files),
                "total_size": sum(f.size for f in session.files),
                "by_object_type": dict(Counter(f.object_type or "unknown" for f in session.files)),
            },
            "next_action": result.next_action.model_dump(mode='json', exclude_none=True),
            "progress": manager.build_progress(session),
        }
        if result.discovery is not None:
            output["discovery_summary"] = result.discovery.model_dump(mode='json')
        return output


class NextTool(ToolExecutor):

    @property
    def name(self) -> str:
        return "workflow_next"

    def execute(self, args: Dict[str, Any]) -> Dict[str, Any]:
        manager = self.engine.manager
        session, action = manager.next(_require(args, "session_id"))
        return {
            "session_id": session.id,
            "next_action": action.model_dump(mode='json', exclude_none=True),
            "progress": manager.build_progress(session),
        }


class ProgressTool(ToolExecutor):
    """
    Args:
        session_id: Session to update
        completed_action: {action, status, checklist_item_id?, file?, ...}
        findings: Findings to record
        proposed_changes: Proposed changes to record
        expand_checklist: Topics to add to the file's checklist
    """

    @property
    def name(self) -> str:
        return "workflow_progress"

    def execute(self, args: Dict[str, Any]) -> Dict[str, Any]:
        manager = self.engine.manager
        result = manager.report_progress(
            _require(args, "session_id"),
            _require(args, "completed_action"),
            findings=args.get("findings"),
            proposed_changes=args.get("proposed_changes"),
            expand_checklist=args.get("expand_checklist"),
        )
        output = {
            "session_id": result.session.id,
            "next_action": result.next_action.model_dump(mode='json', exclude_none=True),
            "progress": manager.build_progress(result.session),
        }
        if result.expanded_item_ids:
            output["expanded_item_ids"] = result.expanded_item_ids
        if result.ignored_topics:
            output["ignored_topics"] = result.ignored_topics
        if result.replayed:
            output["replayed"] = True
        return output


class BatchTool(ToolExecutor):
    """
    Args:
        session_id: Session to operate on
        operation: apply_fixes | skip_instances | flag_for_review | group_by_type
        filter: {instance_types?, file_patterns?, status?, auto_fixable_only?}
        dry_run: Preview only (default: true)
        confirmation_token: Token from the dry run, required to execute
    """

    @property
    def name(self) -> str:
        return "workflow_batch"

    def execute(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return self.engine.batch.run(
            _require(args, "session_id"),
            _require(args, "operation"),
            batch_filter=args.get("filter"),
            dry_run=args.get("dry_run", True),
            confirmation_token=args.get("confirmation_token"),
        )


class CompleteTool(ToolExecutor):

    @property
    def name(self) -> str:
        return "workflow_complete"

    def execute(self, args: Dict[str, Any]) -> Dict[str, Any]:
        result = self.engine.manager.complete(
            _require(args, "session_id"),
            generate_report=args.get("generate_report", True),
            apply_changes=args.get("apply_changes", False),
            report_format=args.get("report_format", "markdown"),
        )
        output = {
            "session_id": result.session.id,
            "status": result.session.status.value,
            "summary": result.summary,
            "top_issues": result.top_issues,
            "recommendations": result.recommendations,
        }
        if result.report is not None:
            output["report"] = result.report
        if result.report_path is not None:
            output["report_path"] = result.report_path
        return output


class StatusTool(ToolExecutor):

    @property
    def name(self) -> str:
        return "workflow_status"

    def execute(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return self.engine.manager.status(
            _require(args, "session_id"),
            include_files=args.get("include_files", False),
        )


class CancelTool(ToolExecutor):
    """
    Args:
        session_id: Session to cancel
        cancel_all: Cancel every active session instead
        reason: Recorded on the session

    With neither session_id nor cancel_all, lists the active sessions.
    """

    @property
    def name(self) -> str:
        return "workflow_cancel"

    def execute(self, args: Dict[str, Any]) -> Dict[str, Any]:
        manager = self.engine.manager
        reason = args.get("reason")
        if args.get("cancel_all"):
            cancelled = manager.cancel_all(reason)
            return {"cancelled": cancelled, "count": len(cancelled)}
        session_id = args.get("session_id")
        if not session_id:
            active = manager.list_active()
            return {
                "message": "Specify session_id or cancel_all=true",
                "active_sessions": active,
            }
        session = manager.cancel(session_id, reason)
        return {
            "session_id": session.id,
            "status": session.status.value,
            "cancel_reason": session.cancel_reason,
        }


class ListTool(ToolExecutor):

    @property
    def name(self) -> str:
        return "workflow_list"

    def execute(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "workflow_types": self.engine.registry.describe(),
            "active_sessions": self.engine.manager.list_active(),
        }


class WorkflowToolRegistry:
    """
    Registry of workflow tools

    Manages tool executors and turns every engine failure into a
    structured error result.
    """

    def __init__(self, engine: Optional[WorkflowEngine] = None):
        self.engine = engine or WorkflowEngine()
        self._tools: Dict[str, ToolExecutor] = {}

        for tool_class in (StartTool, NextTool, ProgressTool, BatchTool,
                           CompleteTool, StatusTool, CancelTool, ListTool):
            self.register(tool_class(self.engine))

    def register(self, tool: ToolExecutor) -> None:
        self._tools[tool.name] = tool

    def get(self, tool_name: str) -> Optional[ToolExecutor]:
        return self._tools.get(tool_name)

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def execute(self, tool_name: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a tool by name.

        Returns:
            Tool result, or an error dict with ``is_error`` set
        """
        tool = self.get(tool_name)
        if not tool:
            return {
                "is_error": True,
                "error": "unknown_tool",
                "message": f"Tool not found: {tool_name}. Available tools: {self.list_tools()}",
                "details": {"tool": tool_name},
            }

        try:
            return tool.execute(args or {})
        except WorkflowEngineError as e:
            logger.info(f"{tool_name} failed: {e.code}: {e.message}")
            return {"is_error": True, **e.to_dict()}
        except Exception as e:
            logger.exception(f"Unexpected error in {tool_name}")
            return {
                "is_error": True,
                "error": "internal_error",
                "message": f"{type(e).__name__}: {e}",
                "details": {"tool": tool_name},
            }
