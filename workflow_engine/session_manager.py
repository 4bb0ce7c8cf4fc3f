"""
Workflow Session Manager

Drives an agent through a workflow session:

- start: inventory scan, phase/checklist instantiation, autonomous phases
- next: the single action the agent must perform next (read only)
- progress: apply a completed action, findings, proposed changes and
  checklist expansion, then persist and return the next action
- complete / status / cancel / list

Work in guided phases is offered phase by phase and, within a phase, file
by file in inventory order. Every mutation runs under the session's lock
and is saved with an optimistic version check; a stale save is retried
against freshly loaded state.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .config import EngineConfig
from .definitions import DefinitionRegistry
from .error_handling import (
    ConfigurationError,
    EmptyScope,
    InvalidCompletedAction,
    MissingRequiredOption,
    RetryHandler,
    SessionClosed,
    WorkflowEngineError,
)
from .path_resolver import WorkflowPaths
from .patterns import PatternDiscoveryEngine
from .reports import ReportGenerator
from .scanner import FileScanner
from .schema import (
    ITEM_ACTIONS,
    OPEN_ITEM_STATUSES,
    AnalysisItem,
    ChecklistExpansion,
    ChecklistItemBase,
    CompletedAction,
    DiscoverySummary,
    EventType,
    FileEntry,
    FileStatus,
    Finding,
    InstanceTypeSummary,
    ItemStatus,
    ItemType,
    NextAction,
    NextActionType,
    PatternInstanceItem,
    PatternMatch,
    Phase,
    PhaseDef,
    PhaseMode,
    PhaseStatus,
    PhaseTask,
    ProposedChange,
    SessionEvent,
    SessionStatus,
    TopicApplicationItem,
    ValidationItem,
    WorkflowDefinition,
    WorkflowOptions,
    WorkflowSession,
)
from .storage import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar('T')
M = TypeVar('M', bound=BaseModel)

REPORTABLE_ACTIONS = {
    NextActionType.ANALYZE_FILE.value,
    NextActionType.APPLY_TOPIC.value,
    NextActionType.CONVERT_INSTANCE.value,
    NextActionType.VALIDATE_FILE.value,
    NextActionType.RUN_PHASE.value,
}
TERMINAL_REPORT_STATUSES = {ItemStatus.COMPLETED.value, ItemStatus.SKIPPED.value, ItemStatus.FAILED.value}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def generate_session_id(workflow_type: str) -> str:
    """wf-<type>-<YYYY-MM-DD>-<6 hex chars>"""
    return f"wf-{workflow_type}-{_utc_now().strftime('%Y-%m-%d')}-{uuid.uuid4().hex[:6]}"


def finish_item(item: ChecklistItemBase, status: ItemStatus, result: Optional[dict] = None,
                skip_reason: Optional[str] = None, error: Optional[str] = None) -> None:
    """Move an item to a terminal status through in_progress."""
    if item.status == ItemStatus.PENDING:
        item.transition(ItemStatus.IN_PROGRESS)
    item.transition(status)
    if result is not None:
        item.result = result
    item.skip_reason = skip_reason
    item.error = error


def _coerce(model: type[M], value: Union[M, dict, None], field_name: str,
            error: type[WorkflowEngineError] = ConfigurationError) -> Optional[M]:
    if value is None or isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise error(f"Invalid {field_name}: {e}", field=field_name)


def _coerce_list(model: type[M], values: Optional[Iterable[Any]], field_name: str,
                 error: type[WorkflowEngineError] = ConfigurationError) -> list[M]:
    return [_coerce(model, v, field_name, error) for v in (values or [])]


@dataclass
class StartResult:
    session: WorkflowSession
    next_action: NextAction
    discovery: Optional[DiscoverySummary] = None


@dataclass
class ProgressResult:
    session: WorkflowSession
    next_action: NextAction
    expanded_item_ids: list[str] = field(default_factory=list)
    ignored_topics: list[dict[str, Any]] = field(default_factory=list)
    replayed: bool = False


@dataclass
class CompleteResult:
    session: WorkflowSession
    summary: dict[str, Any]
    top_issues: list[dict[str, Any]]
    recommendations: list[str]
    report: Optional[str] = None
    report_path: Optional[str] = None


class WorkflowSessionManager:
    """
    Orchestrates workflow sessions.

    All collaborators are injected so several engines can coexist in one
    process without sharing registries, stores or token maps.
    """

    def __init__(
        self,
        registry: DefinitionRegistry,
        store: SessionStore,
        config: Optional[EngineConfig] = None,
        scanner: Optional[FileScanner] = None,
        discovery: Optional[PatternDiscoveryEngine] = None,
        paths: Optional[WorkflowPaths] = None,
        retry_handler: Optional[RetryHandler] = None,
    ):
        self.config = config or EngineConfig()
        self.registry = registry
        self.store = store
        self.scanner = scanner or FileScanner(self.config.scanner.max_file_size_bytes)
        self.discovery = discovery or PatternDiscoveryEngine(
            self.config.scanner.max_file_size_bytes,
            default_context_lines=self.config.discovery.default_context_lines,
        )
        self.paths = paths
        self.retry = retry_handler or RetryHandler(self.config.retry.to_policy())
        self.reports = ReportGenerator()

    # ========================================================================
    # start
    # ========================================================================

    def start(
        self,
        workflow_type: str,
        scope_root: Union[str, Path],
        options: Union[WorkflowOptions, dict, None] = None,
        run_autonomous: bool = True,
        timeout_ms: Optional[int] = None,
    ) -> StartResult:
        """
        Start a session.

        Raises:
            UnknownWorkflowType: If the type is not registered
            MissingRequiredOption: If the definition's required options are absent
            EmptyScope: If no file matches the include/exclude globs
        """
        definition = self.registry.get(workflow_type)
        opts = _coerce(WorkflowOptions, options or {}, "options")

        missing = [name for name in definition.required_options if not opts.has_option(name)]
        if missing:
            raise MissingRequiredOption(workflow_type, missing)

        root = Path(scope_root).expanduser().resolve()
        include = opts.include_patterns or definition.file_patterns
        exclude = opts.exclude_patterns if opts.exclude_patterns is not None else definition.file_exclusions
        scanned = self.scanner.scan(
            root,
            include,
            exclude,
            max_files=opts.max_files or self.config.scanner.default_max_files,
            priority_patterns=opts.priority_patterns,
        )
        if not scanned:
            raise EmptyScope(str(root), include, exclude)

        session = WorkflowSession(
            id=generate_session_id(workflow_type),
            workflow_type=definition.type,
            workflow_name=definition.name,
            scope_root=str(root),
            options=opts,
            definition=definition,
            specialist=definition.specialist or definition.pattern_discovery.specialist,
            phases=[self._phase_from_def(p) for p in definition.phases],
            files=[
                FileEntry(
                    path=f.path,
                    size=f.size,
                    object_type=f.object_type,
                    checklist=self._initial_checklist(definition),
                )
                for f in scanned
            ],
        )

        for phase in session.phases:
            if phase.task == PhaseTask.INVENTORY:
                phase.start()
                phase.finish()
                phase.result = {"files": len(scanned)}
        session.status = SessionStatus.IN_PROGRESS

        deadline = None
        if run_autonomous:
            budget = timeout_ms if timeout_ms is not None else self.config.discovery.timeout_ms
            deadline = time.monotonic() + budget / 1000.0
        self._advance(session, definition, run_tasks=run_autonomous, deadline=deadline)

        self.store.save(session)
        self._log_event(session, EventType.SESSION_STARTED, f"Started {definition.type} over {len(scanned)} files")
        logger.info(f"Started session {session.id} ({definition.type}, {len(scanned)} files)")

        return StartResult(
            session=session,
            next_action=self.compute_next_action(session),
            discovery=session.discovery,
        )

    @staticmethod
    def _phase_from_def(phase_def: PhaseDef) -> Phase:
        return Phase(
            id=phase_def.id,
            name=phase_def.name,
            description=phase_def.description,
            mode=phase_def.mode,
            required=phase_def.required,
            task=phase_def.task,
        )

    @staticmethod
    def _initial_checklist(definition: WorkflowDefinition) -> list[ChecklistItemBase]:
        default_phase = definition.default_guided_phase()
        items: list[ChecklistItemBase] = []
        for template in definition.per_file_checklist:
            common = dict(
                id=_new_id(template.id),
                description=template.description,
                required=template.required,
                phase_id=template.phase or default_phase,
                template_id=template.id,
            )
            if template.type == ItemType.ANALYSIS:
                items.append(AnalysisItem(**common))
            elif template.type == ItemType.VALIDATION:
                items.append(ValidationItem(**common))
            else:
                items.append(TopicApplicationItem(topic_id=template.topic_id or template.id, **common))
        return items

    # ========================================================================
    # Cursor and state bookkeeping
    # ========================================================================

    @staticmethod
    def _definition(session: WorkflowSession, registry: DefinitionRegistry) -> WorkflowDefinition:
        return session.definition or registry.get(session.workflow_type)

    def _advance(self, session: WorkflowSession, definition: WorkflowDefinition,
                 run_tasks: bool = False, deadline: Optional[float] = None) -> None:
        """
        Move the phase cursor past finished phases, running autonomous tasks
        on the way when run_tasks is set, then refresh files and counters.
        """
        for phase in session.phases:
            if phase.is_done:
                continue
            session.current_phase_id = phase.id

            if phase.mode == PhaseMode.AUTONOMOUS:
                if phase.task == PhaseTask.REPORT:
                    phase.start()
                    break
                if phase.task == PhaseTask.PATTERN_SCAN:
                    if not run_tasks or not self._run_pattern_scan(session, definition, phase, deadline):
                        break
                    continue
                # Nothing for the engine to run
                phase.start()
                phase.finish(PhaseStatus.COMPLETED if phase.required else PhaseStatus.SKIPPED)
                self._log_phase_done(session, phase)
                continue

            phase.start()
            if any(item.status in OPEN_ITEM_STATUSES for _, _, item in self._phase_items(session, phase.id)):
                break
            phase.finish()
            self._log_phase_done(session, phase)

        self._refresh(session, definition)

    def _log_phase_done(self, session: WorkflowSession, phase: Phase) -> None:
        logger.info(f"Session {session.id}: phase '{phase.id}' {phase.status.value}")
        self._log_event(session, EventType.PHASE_COMPLETED, f"Phase {phase.id} {phase.status.value}",
                        phase_id=phase.id)

    @staticmethod
    def _phase_items(session: WorkflowSession, phase_id: str):
        for index, entry in enumerate(session.files):
            for item in entry.checklist:
                if item.phase_id == phase_id:
                    yield index, entry, item

    @staticmethod
    def _offerable(entry: FileEntry, phase_id: str) -> Optional[ChecklistItemBase]:
        """
        First open item of a file within a phase. Validation items are
        offered only once the file's other items in that phase are terminal.
        """
        open_items = [i for i in entry.checklist if i.phase_id == phase_id and i.status in OPEN_ITEM_STATUSES]
        for item in open_items:
            if not isinstance(item, ValidationItem):
                return item
        return open_items[0] if open_items else None

    def _refresh(self, session: WorkflowSession, definition: WorkflowDefinition) -> None:
        """Recompute file statuses, counters and the file cursor from item state."""
        require_all = definition.completion_rules.require_all_checklist_items
        current = self._current_target(session)
        current_index = current[0] if current else None

        for index, entry in enumerate(session.files):
            if entry.status == FileStatus.COMPLETED:
                continue
            has_open = any(item.status in OPEN_ITEM_STATUSES for item in entry.checklist)
            if entry.required_items_done() and (not has_open or not require_all):
                entry.status = FileStatus.COMPLETED
                entry.completed_at = _utc_now()
            elif index == current_index or any(item.is_terminal for item in entry.checklist):
                entry.status = FileStatus.IN_PROGRESS

        if current_index is not None:
            session.current_file_index = current_index

        pattern_items = [item for _, item in session.iter_pattern_items()]
        session.files_total = len(session.files)
        session.files_completed = sum(1 for f in session.files if f.status == FileStatus.COMPLETED)
        session.instances_total = len(pattern_items)
        session.instances_completed = sum(1 for i in pattern_items if i.status == ItemStatus.COMPLETED)
        session.instances_auto_fixed = sum(1 for i in pattern_items if (i.result or {}).get("auto_fixed"))
        session.instances_manual_review = sum(
            1 for i in pattern_items
            if i.status in OPEN_ITEM_STATUSES and i.match.requires_manual_review
        )

    def _current_target(self, session: WorkflowSession) -> Optional[tuple[int, FileEntry, ChecklistItemBase]]:
        """The (file index, file, item) the next action points at, if any."""
        for phase in session.phases:
            if phase.is_done:
                continue
            if phase.mode == PhaseMode.AUTONOMOUS:
                if phase.task in (PhaseTask.PATTERN_SCAN, PhaseTask.REPORT):
                    return None
                continue
            for index, entry in enumerate(session.files):
                item = self._offerable(entry, phase.id)
                if item is not None:
                    return index, entry, item
        return None

    # ========================================================================
    # next action
    # ========================================================================

    def compute_next_action(self, session: WorkflowSession) -> NextAction:
        """
        Derive the next action from session state alone. Never mutates.

        Finished phases are passed over, guided phases yield the first open
        item in file order, a pending scan yields ``run_phase``, and once
        everything required is done the action is ``complete_workflow``.
        """
        if session.status == SessionStatus.COMPLETED:
            return NextAction(
                type=NextActionType.COMPLETE_WORKFLOW,
                instruction="Workflow is already completed. No further actions.",
            )
        if session.status == SessionStatus.FAILED:
            return NextAction(
                type=NextActionType.USER_DECISION,
                description="Session was cancelled",
                instruction=f"Session was cancelled ({session.cancel_reason or 'no reason given'}). "
                            f"Start a new session to continue.",
            )

        definition = self._definition(session, self.registry)
        for phase in session.phases:
            if phase.is_done:
                continue
            if phase.mode == PhaseMode.AUTONOMOUS:
                if phase.task == PhaseTask.PATTERN_SCAN:
                    return self._run_phase_action(session, phase)
                if phase.task == PhaseTask.REPORT:
                    break
                continue
            for index, entry in enumerate(session.files):
                item = self._offerable(entry, phase.id)
                if item is not None:
                    return self._item_action(session, definition, phase, index, entry, item)

        return self._terminal_action(session)

    def _run_phase_action(self, session: WorkflowSession, phase: Phase) -> NextAction:
        resumed = phase.status == PhaseStatus.IN_PROGRESS
        return NextAction(
            type=NextActionType.RUN_PHASE,
            phase_id=phase.id,
            description=phase.description or phase.name,
            instruction=(
                f"{'Resume' if resumed else 'Run'} the autonomous phase '{phase.name}'. "
                f"Call workflow_progress with completed_action "
                f"{{action: 'run_phase', phase_id: '{phase.id}', status: 'completed'}}."
            ),
            tool_call={
                "tool": "workflow_progress",
                "arguments": {
                    "session_id": session.id,
                    "completed_action": {"action": "run_phase", "phase_id": phase.id, "status": "completed"},
                },
            },
        )

    def _item_action(self, session: WorkflowSession, definition: WorkflowDefinition, phase: Phase,
                     index: int, entry: FileEntry, item: ChecklistItemBase) -> NextAction:
        file_path = str(Path(session.scope_root) / entry.path)
        report_hint = (
            f"Then call workflow_progress with completed_action "
            f"{{action: '{ITEM_ACTIONS[ItemType(item.type)].value}', checklist_item_id: '{item.id}', "
            f"status: 'completed'}}."
        )
        action = NextAction(
            type=ITEM_ACTIONS[ItemType(item.type)],
            phase_id=phase.id,
            file=entry.path,
            file_index=index,
            checklist_item_id=item.id,
            description=item.description,
        )

        if isinstance(item, AnalysisItem):
            topics = definition.topic_discovery
            action.instruction = f"Analyze {entry.path}: {item.description}. Record findings. {report_hint}"
            if topics.enabled and topics.auto_expand_checklist:
                action.instruction += (
                    f" Add relevant topics (relevance >= {topics.min_relevance_score}) "
                    f"with expand_checklist."
                )
            action.tool_call = {
                "tool": topics.tool or "analyze_al_code",
                "arguments": {"file_path": file_path},
            }
        elif isinstance(item, TopicApplicationItem):
            action.topic_id = item.topic_id
            action.instruction = (
                f"Apply topic '{item.topic_id}' to {entry.path}. Record findings and proposed changes. "
                f"{report_hint}"
            )
            action.tool_call = {
                "tool": "retrieve_bc_knowledge",
                "arguments": {"topic_id": item.topic_id},
            }
        elif isinstance(item, PatternInstanceItem):
            match = item.match
            action.instance = match
            if match.auto_fixable and not match.requires_manual_review:
                action.instruction = (
                    f"Line {match.line_number} of {entry.path} is an auto-fixable '{match.instance_type}' "
                    f"instance. Preview fixes for every instance of this type with workflow_batch, or "
                    f"convert it by hand. {report_hint}"
                )
                action.tool_call = {
                    "tool": "workflow_batch",
                    "arguments": {
                        "session_id": session.id,
                        "operation": "apply_fixes",
                        "filter": {"instance_types": [match.instance_type]},
                        "dry_run": True,
                    },
                }
                action.options = ["apply_fixes", "convert_manually", "skip"]
            else:
                suggestion = (
                    f" Suggested replacement: {match.suggested_replacement}"
                    if match.suggested_replacement else ""
                )
                action.instruction = (
                    f"Convert the '{match.instance_type}' instance at line {match.line_number} of "
                    f"{entry.path}: {match.suggested_action}.{suggestion} {report_hint}"
                )
                action.options = ["convert_manually", "skip", "flag_for_review"]
        else:
            action.instruction = (
                f"Confirm {entry.path} is done: {item.description}. {report_hint}"
            )
        return action

    def _terminal_action(self, session: WorkflowSession) -> NextAction:
        incomplete = [f for f in session.files if f.status != FileStatus.COMPLETED]
        required_phases_done = all(
            p.is_done for p in session.phases if p.required and p.task != PhaseTask.REPORT
        )
        if not incomplete and required_phases_done:
            return NextAction(
                type=NextActionType.COMPLETE_WORKFLOW,
                description="All files and required phases are complete",
                instruction="All work is done. Call workflow_complete to generate the final report.",
                tool_call={"tool": "workflow_complete", "arguments": {"session_id": session.id}},
            )

        failed = [
            {"file": entry.path, "checklist_item_id": item.id, "description": item.description,
             "error": item.error}
            for entry in incomplete
            for item in entry.checklist
            if item.required and item.status == ItemStatus.FAILED
        ]
        return NextAction(
            type=NextActionType.USER_DECISION,
            description=f"{len(incomplete)} files cannot be completed",
            instruction=(
                f"{len(failed)} required checklist items failed and nothing else is actionable. "
                f"Ask the user whether to finish the workflow with these failures "
                f"(call workflow_complete) or cancel it."
            ),
            options=["complete_with_failures", "cancel"],
            tool_call={"tool": "workflow_complete", "arguments": {"session_id": session.id},
                       "failed_items": failed},
        )

    def next(self, session_id: str) -> tuple[WorkflowSession, NextAction]:
        """
        Raises:
            SessionNotFound: If the session does not exist
        """
        session = self.store.load(session_id)
        return session, self.compute_next_action(session)

    # ========================================================================
    # progress
    # ========================================================================

    def apply_mutation(self, session_id: str,
                       mutate: Callable[[WorkflowSession, WorkflowDefinition], T]) -> tuple[WorkflowSession, T]:
        """
        Load, mutate and save a session under its lock.

        The mutation is re-applied to fresh state if the save hits a
        concurrent modification. Cursor and counters are refreshed before
        saving.

        Raises:
            SessionNotFound: If the session does not exist
            SessionClosed: If the session is completed or failed
        """
        def attempt() -> tuple[WorkflowSession, T]:
            with self.store.lock(session_id):
                session = self.store.load(session_id)
                if session.is_closed:
                    raise SessionClosed(session_id, session.status.value)
                definition = self._definition(session, self.registry)
                result = mutate(session, definition)
                if session.is_closed:
                    self._refresh(session, definition)
                else:
                    self._advance(session, definition)
                self.store.save(session)
                return session, result

        return self.retry.execute(attempt)

    def report_progress(
        self,
        session_id: str,
        completed_action: Union[CompletedAction, dict],
        findings: Optional[Iterable[Union[Finding, dict]]] = None,
        proposed_changes: Optional[Iterable[Union[ProposedChange, dict]]] = None,
        expand_checklist: Optional[Iterable[Union[ChecklistExpansion, dict]]] = None,
    ) -> ProgressResult:
        """
        Apply one completed action and return the next one.

        Raises:
            SessionNotFound: If the session does not exist
            InvalidCompletedAction: If the action names no existing item or
                the status is not terminal
        """
        if completed_action is None:
            raise InvalidCompletedAction("completed_action is required", field="completed_action")
        action = _coerce(CompletedAction, completed_action, "completed_action", InvalidCompletedAction)
        finding_models = _coerce_list(Finding, findings, "findings", InvalidCompletedAction)
        change_models = _coerce_list(ProposedChange, proposed_changes, "proposed_changes",
                                     InvalidCompletedAction)
        expansions = _coerce_list(ChecklistExpansion, expand_checklist, "expand_checklist",
                                  InvalidCompletedAction)

        if action.action not in REPORTABLE_ACTIONS:
            raise InvalidCompletedAction(
                f"Unknown action '{action.action}'. Expected one of: {', '.join(sorted(REPORTABLE_ACTIONS))}",
                field="action",
                value=action.action,
            )
        if action.status not in TERMINAL_REPORT_STATUSES:
            raise InvalidCompletedAction(
                f"Status '{action.status}' is not terminal. Use completed, skipped or failed.",
                field="status",
                value=action.status,
            )

        def mutate(session: WorkflowSession, definition: WorkflowDefinition) -> ProgressResult:
            if action.action == NextActionType.RUN_PHASE.value:
                return self._apply_run_phase(session, definition, action, finding_models)
            return self._apply_item_report(session, definition, action, finding_models,
                                           change_models, expansions)

        session, result = self.apply_mutation(session_id, mutate)
        result.session = session
        result.next_action = self.compute_next_action(session)

        self._log_event(
            session, EventType.PROGRESS_REPORTED,
            f"{action.action} {action.status}",
            item_id=action.checklist_item_id,
            details={"findings": len(finding_models), "changes": len(change_models),
                     "expanded": result.expanded_item_ids, "replayed": result.replayed},
        )
        if result.expanded_item_ids:
            self._log_event(session, EventType.CHECKLIST_EXPANDED,
                            f"Added {len(result.expanded_item_ids)} topic items",
                            details={"item_ids": result.expanded_item_ids})
        return result

    def _apply_run_phase(self, session: WorkflowSession, definition: WorkflowDefinition,
                         action: CompletedAction, findings: list[Finding]) -> ProgressResult:
        phase = session.get_phase(action.phase_id or session.current_phase_id)
        if phase is None:
            raise InvalidCompletedAction(f"Unknown phase '{action.phase_id}'", field="phase_id")
        if phase.mode != PhaseMode.AUTONOMOUS or phase.task != PhaseTask.PATTERN_SCAN:
            raise InvalidCompletedAction(
                f"Phase '{phase.id}' is not an autonomous scan phase",
                field="phase_id",
                value=phase.id,
            )

        result = ProgressResult(session=session, next_action=None)
        if phase.is_done:
            result.replayed = True
            return result

        deadline = time.monotonic() + self.config.discovery.timeout_ms / 1000.0
        if self._run_pattern_scan(session, definition, phase, deadline):
            self._advance(session, definition, run_tasks=True, deadline=deadline)
        session.findings.extend(findings)
        return result

    def _resolve_item(self, session: WorkflowSession,
                      action: CompletedAction) -> tuple[FileEntry, ChecklistItemBase]:
        if action.checklist_item_id:
            found = session.find_item(action.checklist_item_id)
            if found is None or (action.file and found[0].path != action.file):
                raise InvalidCompletedAction(
                    f"No checklist item '{action.checklist_item_id}'"
                    + (f" in {action.file}" if action.file else ""),
                    field="checklist_item_id",
                    value=action.checklist_item_id,
                )
            return found

        if action.file:
            entry = session.get_file(action.file)
            if entry is None:
                raise InvalidCompletedAction(f"File not in session: {action.file}", field="file",
                                             value=action.file)
            for phase in session.phases:
                if not phase.is_done and phase.mode == PhaseMode.GUIDED:
                    item = self._offerable(entry, phase.id)
                    if item is not None:
                        return entry, item
            raise InvalidCompletedAction(f"No open checklist item in {action.file}", field="file",
                                         value=action.file)

        current = self._current_target(session)
        if current is None:
            raise InvalidCompletedAction("There is no open checklist item to report on",
                                         field="checklist_item_id")
        return current[1], current[2]

    def _apply_item_report(self, session: WorkflowSession, definition: WorkflowDefinition,
                           action: CompletedAction, findings: list[Finding],
                           changes: list[ProposedChange],
                           expansions: list[ChecklistExpansion]) -> ProgressResult:
        entry, item = self._resolve_item(session, action)
        expected = ITEM_ACTIONS[ItemType(item.type)].value
        if action.action != expected:
            raise InvalidCompletedAction(
                f"Item '{item.id}' is a {item.type} item; report it with action '{expected}'",
                field="action",
                value=action.action,
                expected=expected,
            )

        result = ProgressResult(session=session, next_action=None)
        status = ItemStatus(action.status)

        if item.is_terminal:
            # Replayed report: keep the first outcome and record nothing twice
            result.replayed = True
            findings = [f for f in self._tag(findings, entry) if f not in entry.findings]
            changes = [c for c in self._tag(changes, entry) if c not in entry.proposed_changes]
        else:
            if status == ItemStatus.SKIPPED:
                if not definition.completion_rules.allow_skip_with_reason:
                    raise InvalidCompletedAction(f"Workflow '{definition.type}' does not allow skipping",
                                                 field="status", value=action.status)
                if not action.skip_reason:
                    raise InvalidCompletedAction("Skipping requires a skip_reason", field="skip_reason")
            finish_item(item, status, result=action.result, skip_reason=action.skip_reason,
                        error=action.error)
            findings = self._tag(findings, entry)
            changes = self._tag(changes, entry)

        for finding in findings:
            (session.get_file(finding.file) or entry).findings.append(finding)
            session.findings.append(finding)
        for change in changes:
            (session.get_file(change.file) or entry).proposed_changes.append(change)
            session.proposed_changes.append(change)

        for expansion in expansions:
            added = self._expand(session, definition, entry, item, expansion, result)
            if added:
                result.expanded_item_ids.append(added)
        return result

    @staticmethod
    def _tag(records: list[Any], entry: FileEntry) -> list[Any]:
        return [r if r.file else r.model_copy(update={"file": entry.path}) for r in records]

    def _expand(self, session: WorkflowSession, definition: WorkflowDefinition, entry: FileEntry,
                item: ChecklistItemBase, expansion: ChecklistExpansion,
                result: ProgressResult) -> Optional[str]:
        topics = definition.topic_discovery
        # A completed file never reopens
        if entry.status == FileStatus.COMPLETED:
            result.ignored_topics.append({"topic_id": expansion.topic_id, "reason": "file_completed"})
            return None
        if expansion.relevance_score is not None and expansion.relevance_score < topics.min_relevance_score:
            result.ignored_topics.append({"topic_id": expansion.topic_id, "reason": "below_min_relevance"})
            return None
        if entry.has_topic(expansion.topic_id):
            result.ignored_topics.append({"topic_id": expansion.topic_id, "reason": "already_on_checklist"})
            return None

        phase_id = self._expansion_phase(session, expansion.phase_id or topics.phase or item.phase_id)
        if phase_id is None:
            raise InvalidCompletedAction("No guided phase is left to receive expanded checklist items",
                                         field="expand_checklist")

        new_item = TopicApplicationItem(
            id=_new_id("topic"),
            topic_id=expansion.topic_id,
            description=expansion.description or f"Apply topic: {expansion.topic_id}",
            relevance_score=expansion.relevance_score,
            required=expansion.required,
            phase_id=phase_id,
        )
        entry.checklist.append(new_item)
        return new_item.id

    @staticmethod
    def _expansion_phase(session: WorkflowSession, preferred: Optional[str]) -> Optional[str]:
        """First guided phase that is not done, starting at the preferred one."""
        ids = [p.id for p in session.phases]
        start = ids.index(preferred) if preferred in ids else 0
        for phase in session.phases[start:]:
            if phase.mode == PhaseMode.GUIDED and not phase.is_done:
                return phase.id
        for phase in session.phases:
            if phase.mode == PhaseMode.GUIDED and not phase.is_done:
                return phase.id
        return None

    # ========================================================================
    # Pattern scan
    # ========================================================================

    def _run_pattern_scan(self, session: WorkflowSession, definition: WorkflowDefinition,
                          phase: Phase, deadline: Optional[float]) -> bool:
        """
        Scan files not yet scanned by this phase. Returns True when the
        phase finished, False when the deadline interrupted it.
        """
        phase.start()
        state = phase.result or {}
        scanned = set(state.get("scanned_files", []))
        remaining = [f.path for f in session.files if f.path not in scanned]

        patterns = definition.pattern_discovery.patterns if definition.pattern_discovery.enabled else []
        outcome = self.discovery.discover(Path(session.scope_root), remaining, patterns, deadline)
        self._materialize(session, definition, phase, outcome.matches)

        scanned.update(outcome.scanned_files)
        phase.result = {
            "scanned_files": sorted(scanned),
            "errors": state.get("errors", 0) + len(outcome.errors),
        }
        finished = not outcome.timed_out
        self._complete_scan_items(session, phase, None if finished else set(outcome.scanned_files))
        session.discovery = self._discovery_summary(session, len(scanned), phase.result["errors"],
                                                    completed=finished)
        if finished:
            phase.finish()
            self._log_phase_done(session, phase)
        else:
            logger.warning(f"Session {session.id}: phase '{phase.id}' interrupted after "
                           f"{len(scanned)}/{len(session.files)} files")
        return finished

    def _materialize(self, session: WorkflowSession, definition: WorkflowDefinition,
                     phase: Phase, matches: list[PatternMatch]) -> int:
        """Create one pattern_instance item per new (file, pattern, line)."""
        target_phase = definition.pattern_discovery.phase or definition.default_guided_phase(after=phase.id)
        existing = {
            (item.match.file, item.match.pattern_id, item.match.line_number)
            for _, item in session.iter_pattern_items()
        }
        created = 0
        for match in matches:
            key = (match.file, match.pattern_id, match.line_number)
            if key in existing:
                continue
            entry = session.get_file(match.file)
            if entry is None:
                continue
            existing.add(key)
            entry.checklist.append(PatternInstanceItem(
                id=_new_id("inst"),
                description=match.description,
                phase_id=target_phase,
                match=match,
            ))
            created += 1
        return created

    def _complete_scan_items(self, session: WorkflowSession, phase: Phase,
                             only_files: Optional[set[str]]) -> None:
        for _, entry, item in self._phase_items(session, phase.id):
            if item.is_terminal or (only_files is not None and entry.path not in only_files):
                continue
            instances = sum(1 for i in entry.checklist if isinstance(i, PatternInstanceItem))
            finish_item(item, ItemStatus.COMPLETED, result={"instances": instances})

    @staticmethod
    def _discovery_summary(session: WorkflowSession, files_scanned: int, errors: int,
                           completed: bool) -> DiscoverySummary:
        summary = DiscoverySummary(files_scanned=files_scanned, errors=errors,
                                   completed=completed, timed_out=not completed)
        files_with_matches = set()
        for entry, item in session.iter_pattern_items():
            files_with_matches.add(entry.path)
            bucket = summary.by_type.setdefault(item.match.instance_type, InstanceTypeSummary())
            bucket.count += 1
            if item.match.auto_fixable and not item.match.requires_manual_review:
                bucket.auto_fixable += 1
            else:
                bucket.needs_review += 1
        summary.total_instances = sum(b.count for b in summary.by_type.values())
        summary.files_with_matches = len(files_with_matches)
        return summary

    # ========================================================================
    # complete / status / cancel / list
    # ========================================================================

    def complete(self, session_id: str, generate_report: bool = True, apply_changes: bool = False,
                 report_format: str = "markdown") -> CompleteResult:
        """
        Close a session and build its summary.

        Completing an already completed session returns the summary again.

        Raises:
            SessionNotFound: If the session does not exist
            SessionClosed: If the session was cancelled
        """
        session = self.store.load(session_id)
        if session.status == SessionStatus.FAILED:
            raise SessionClosed(session_id, session.status.value)

        if session.status != SessionStatus.COMPLETED:
            def mutate(s: WorkflowSession, definition: WorkflowDefinition) -> None:
                for phase in s.phases:
                    if phase.task == PhaseTask.REPORT:
                        phase.start()
                        phase.finish()
                s.status = SessionStatus.COMPLETED
                s.completed_at = _utc_now()

            session, _ = self.apply_mutation(session_id, mutate)
            self._log_event(session, EventType.SESSION_COMPLETED, "Session completed")
            logger.info(f"Completed session {session.id}")

        definition = self._definition(session, self.registry)
        summary = self.reports.build_summary(session, apply_changes=apply_changes)
        result = CompleteResult(
            session=session,
            summary=summary,
            top_issues=self.reports.top_issues(session),
            recommendations=self.reports.recommendations(session, definition),
        )
        if generate_report:
            result.report = self.reports.render(session, summary, result.top_issues,
                                                result.recommendations, fmt=report_format)
            if self.paths is not None:
                path = self.paths.report_file(session.id, report_format)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(result.report)
                result.report_path = str(path)
        return result

    def build_progress(self, session: WorkflowSession) -> dict[str, Any]:
        """Progress snapshot returned with every next action."""
        counts = session.file_counts()
        current = None
        if 0 <= session.current_file_index < len(session.files):
            current = session.files[session.current_file_index].path
        percent = round(100 * session.files_completed / session.files_total) if session.files_total else 0
        return {
            "status": session.status.value,
            "phase": session.current_phase_id,
            "files_total": session.files_total,
            "files_completed": session.files_completed,
            "files_in_progress": counts[FileStatus.IN_PROGRESS.value],
            "files_pending": counts[FileStatus.PENDING.value],
            "percent_complete": percent,
            "current_file": current,
            "instances_total": session.instances_total,
            "instances_completed": session.instances_completed,
            "instances_auto_fixed": session.instances_auto_fixed,
            "instances_manual_review": session.instances_manual_review,
        }

    def status(self, session_id: str, include_files: bool = False) -> dict[str, Any]:
        """
        Raises:
            SessionNotFound: If the session does not exist
        """
        session = self.store.load(session_id)
        topic_items = [
            item for entry in session.files for item in entry.checklist
            if isinstance(item, TopicApplicationItem)
        ]
        status = {
            "session_id": session.id,
            "workflow_type": session.workflow_type,
            "workflow_name": session.workflow_name,
            "scope_root": session.scope_root,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
            "progress": self.build_progress(session),
            "phases": [
                {"id": p.id, "name": p.name, "mode": p.mode.value, "status": p.status.value}
                for p in session.phases
            ],
            "topics": {
                "applied": sum(1 for i in topic_items if i.status == ItemStatus.COMPLETED),
                "pending": sum(1 for i in topic_items if i.status in OPEN_ITEM_STATUSES),
            },
            "findings": len(session.findings),
            "proposed_changes": len(session.proposed_changes),
            "next_action": self.compute_next_action(session).model_dump(mode='json', exclude_none=True),
        }
        if session.discovery is not None:
            status["discovery"] = session.discovery.model_dump(mode='json')
        if include_files:
            status["files"] = [
                {
                    "path": entry.path,
                    "status": entry.status.value,
                    "object_type": entry.object_type,
                    "items_total": len(entry.checklist),
                    "items_done": sum(1 for i in entry.checklist if i.is_terminal),
                    "findings": len(entry.findings),
                }
                for entry in session.files
            ]
        return status

    def cancel(self, session_id: str, reason: Optional[str] = None) -> WorkflowSession:
        """
        Mark a session failed.

        Raises:
            SessionNotFound: If the session does not exist
            SessionClosed: If it is already completed or failed
        """
        def mutate(session: WorkflowSession, definition: WorkflowDefinition) -> None:
            session.status = SessionStatus.FAILED
            session.cancel_reason = reason or "Cancelled by user"
            session.completed_at = _utc_now()

        session, _ = self.apply_mutation(session_id, mutate)
        self._log_event(session, EventType.SESSION_CANCELLED, session.cancel_reason)
        logger.info(f"Cancelled session {session_id}: {session.cancel_reason}")
        return session

    def cancel_all(self, reason: Optional[str] = None) -> list[str]:
        cancelled = []
        for session in self.store.list_active():
            try:
                self.cancel(session.id, reason)
            except SessionClosed:
                continue
            cancelled.append(session.id)
        return cancelled

    def list_active(self) -> list[dict[str, Any]]:
        return [
            {
                "session_id": s.id,
                "workflow_type": s.workflow_type,
                "status": s.status.value,
                "phase": s.current_phase_id,
                "files_completed": s.files_completed,
                "files_total": s.files_total,
                "updated_at": s.updated_at.isoformat(),
            }
            for s in self.store.list_active()
        ]

    def cleanup_expired(self) -> list[str]:
        return self.store.cleanup_expired(self.config.storage.session_retention_days)

    def _log_event(self, session: WorkflowSession, event_type: EventType, message: str,
                   **fields: Any) -> None:
        try:
            self.store.append_event(SessionEvent(
                event_type=event_type,
                session_id=session.id,
                message=message,
                **fields,
            ))
        except OSError as e:
            logger.warning(f"Failed to record {event_type.value} for {session.id}: {e}")
