"""
Workflow Schema Definitions using Pydantic

This module defines the structure of workflow definitions (loaded from YAML)
and of the runtime session state tracked by the engine.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Annotated, Any, Iterator, Literal, Optional, Union
from datetime import datetime, timezone
from enum import Enum


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Status of a workflow session."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PhaseStatus(str, Enum):
    """Status of a session phase."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class PhaseMode(str, Enum):
    """Who drives a phase: the engine or the agent."""
    AUTONOMOUS = "autonomous"
    GUIDED = "guided"


class PhaseTask(str, Enum):
    """Work the engine performs for an autonomous phase."""
    INVENTORY = "inventory"
    PATTERN_SCAN = "pattern_scan"
    REPORT = "report"


class FileStatus(str, Enum):
    """Status of a tracked file."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ItemStatus(str, Enum):
    """Status of a checklist item."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


TERMINAL_ITEM_STATUSES = frozenset({ItemStatus.COMPLETED, ItemStatus.SKIPPED, ItemStatus.FAILED})
OPEN_ITEM_STATUSES = frozenset({ItemStatus.PENDING, ItemStatus.IN_PROGRESS})


class ItemType(str, Enum):
    """Kinds of checklist item."""
    ANALYSIS = "analysis"
    VALIDATION = "validation"
    TOPIC_APPLICATION = "topic_application"
    PATTERN_INSTANCE = "pattern_instance"


class FindingSeverity(str, Enum):
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ChangeImpact(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BatchOperation(str, Enum):
    """Bulk operations over pattern-instance items."""
    APPLY_FIXES = "apply_fixes"
    SKIP_INSTANCES = "skip_instances"
    FLAG_FOR_REVIEW = "flag_for_review"
    GROUP_BY_TYPE = "group_by_type"


class NextActionType(str, Enum):
    """What the agent is asked to do next."""
    ANALYZE_FILE = "analyze_file"
    APPLY_TOPIC = "apply_topic"
    CONVERT_INSTANCE = "convert_instance"
    VALIDATE_FILE = "validate_file"
    RUN_PHASE = "run_phase"
    USER_DECISION = "user_decision"
    COMPLETE_WORKFLOW = "complete_workflow"


# Action the agent reports back for each item type
ITEM_ACTIONS = {
    ItemType.ANALYSIS: NextActionType.ANALYZE_FILE,
    ItemType.TOPIC_APPLICATION: NextActionType.APPLY_TOPIC,
    ItemType.PATTERN_INSTANCE: NextActionType.CONVERT_INSTANCE,
    ItemType.VALIDATION: NextActionType.VALIDATE_FILE,
}


# ============================================================================
# YAML Schema (Workflow Definition)
# ============================================================================

class ChecklistItemTemplate(BaseModel):
    """Per-file checklist entry of a workflow definition."""
    model_config = ConfigDict(frozen=True)

    id: str
    type: ItemType = ItemType.ANALYSIS
    description: str
    required: bool = True
    phase: Optional[str] = None  # Phase the item belongs to; first guided phase if unset
    topic_id: Optional[str] = None  # topic_application templates only

    @field_validator('type')
    @classmethod
    def type_cannot_be_pattern_instance(cls, v):
        if v == ItemType.PATTERN_INSTANCE:
            raise ValueError('pattern_instance items are created by discovery, not templates')
        return v


class PhaseDef(BaseModel):
    """Definition of a workflow phase."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    mode: PhaseMode = PhaseMode.GUIDED
    required: bool = True
    task: Optional[PhaseTask] = None
    available_actions: list[str] = Field(default_factory=list)


class ClassifierRule(BaseModel):
    """Ordered rule assigning an instance type to a pattern match."""
    model_config = ConfigDict(frozen=True)

    name: str
    pattern: str
    flags: str = "i"
    suggested_action: str = ""
    auto_fixable: bool = False


class Transformation(BaseModel):
    """Replacement template for one instance type."""
    model_config = ConfigDict(frozen=True)

    template: str
    requires_review: bool = False
    description: str = ""


class PatternDefinition(BaseModel):
    """A reusable scan rule: inclusion regex, exclusion regex, classifiers."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    description: str = ""
    regex: str
    flags: str = "g"
    exclude_regex: Optional[str] = None
    # None falls back to the engine's default window
    context_lines: Optional[int] = None
    # Drop matches that follow a // marker on their own line
    skip_comments: bool = True
    rules: list[ClassifierRule] = Field(default_factory=list)
    transformations: dict[str, Transformation] = Field(default_factory=dict)

    @field_validator('context_lines')
    @classmethod
    def context_lines_not_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError('context_lines must be >= 0')
        return v


class TopicDiscovery(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    tool: Optional[str] = None
    auto_expand_checklist: bool = False
    min_relevance_score: float = 0.0
    phase: Optional[str] = None  # Phase that receives expanded topic items


class PatternDiscovery(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    patterns: list[PatternDefinition] = Field(default_factory=list)
    specialist: Optional[str] = None
    topic_id: Optional[str] = None
    phase: Optional[str] = None  # Phase that receives pattern-instance items


class CompletionRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    require_all_files: bool = True
    require_all_checklist_items: bool = True
    allow_skip_with_reason: bool = True


class WorkflowDefinition(BaseModel):
    """Immutable template for one workflow type."""
    model_config = ConfigDict(frozen=True, extra='allow')

    type: str
    name: str
    description: str = ""
    specialist: Optional[str] = None
    file_patterns: list[str] = Field(default_factory=lambda: ["**/*.al"])
    file_exclusions: list[str] = Field(default_factory=list)
    phases: list[PhaseDef]
    per_file_checklist: list[ChecklistItemTemplate] = Field(default_factory=list)
    topic_discovery: TopicDiscovery = Field(default_factory=TopicDiscovery)
    pattern_discovery: PatternDiscovery = Field(default_factory=PatternDiscovery)
    completion_rules: CompletionRules = Field(default_factory=CompletionRules)
    required_options: list[str] = Field(default_factory=list)

    @field_validator('phases')
    @classmethod
    def phases_not_empty(cls, v):
        if not v:
            raise ValueError('a workflow needs at least one phase')
        return v

    def get_phase(self, phase_id: str) -> Optional[PhaseDef]:
        """Get a phase by ID."""
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def get_phase_index(self, phase_id: str) -> int:
        """Get the index of a phase."""
        for i, phase in enumerate(self.phases):
            if phase.id == phase_id:
                return i
        return -1

    def default_guided_phase(self, after: Optional[str] = None) -> Optional[str]:
        """First guided phase, optionally the first one after a given phase."""
        start = self.get_phase_index(after) + 1 if after else 0
        for phase in self.phases[start:]:
            if phase.mode == PhaseMode.GUIDED:
                return phase.id
        return None


# ============================================================================
# Runtime State (Session)
# ============================================================================

class PatternMatch(BaseModel):
    """One classified match of a pattern definition. Never mutated."""
    model_config = ConfigDict(frozen=True)

    pattern_id: str
    file: str
    line_number: int
    column: int = 0
    matched_text: str
    instance_type: str = "other"
    rule_name: Optional[str] = None
    suggested_action: str = ""
    suggested_replacement: str = ""
    auto_fixable: bool = False
    requires_manual_review: bool = True
    context: list[str] = Field(default_factory=list)
    description: str = ""


class Finding(BaseModel):
    """An observation recorded by the agent."""
    file: Optional[str] = None
    line: Optional[int] = None
    severity: FindingSeverity = FindingSeverity.WARNING
    category: str = "general"
    description: str
    suggestion: Optional[str] = None
    topic_id: Optional[str] = None


class ProposedChange(BaseModel):
    """A concrete code edit suggested by the agent."""
    file: Optional[str] = None
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    original_code: str = ""
    proposed_code: str = ""
    rationale: str = ""
    impact: ChangeImpact = ChangeImpact.MEDIUM
    auto_applicable: bool = False


class ChecklistItemBase(BaseModel):
    id: str
    description: str
    status: ItemStatus = ItemStatus.PENDING
    required: bool = True
    phase_id: Optional[str] = None
    template_id: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    skip_reason: Optional[str] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES

    def transition(self, status: ItemStatus) -> None:
        """Move the item forward. Terminal items never change again."""
        if self.is_terminal:
            raise ValueError(f"item {self.id} is already {self.status.value}")
        if status == ItemStatus.PENDING:
            raise ValueError(f"item {self.id} cannot return to pending")
        self.status = status
        if status in TERMINAL_ITEM_STATUSES:
            self.completed_at = _utc_now()


class AnalysisItem(ChecklistItemBase):
    type: Literal["analysis"] = "analysis"


class ValidationItem(ChecklistItemBase):
    type: Literal["validation"] = "validation"


class TopicApplicationItem(ChecklistItemBase):
    type: Literal["topic_application"] = "topic_application"
    topic_id: str
    relevance_score: Optional[float] = None


class PatternInstanceItem(ChecklistItemBase):
    type: Literal["pattern_instance"] = "pattern_instance"
    match: PatternMatch


ChecklistItem = Annotated[
    Union[AnalysisItem, ValidationItem, TopicApplicationItem, PatternInstanceItem],
    Field(discriminator='type'),
]


class FileEntry(BaseModel):
    """One file under analysis and its checklist."""
    path: str
    size: int = 0
    object_type: Optional[str] = None
    status: FileStatus = FileStatus.PENDING
    checklist: list[ChecklistItem] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)
    proposed_changes: list[ProposedChange] = Field(default_factory=list)
    completed_at: Optional[datetime] = None

    def get_item(self, item_id: str) -> Optional[ChecklistItemBase]:
        for item in self.checklist:
            if item.id == item_id:
                return item
        return None

    def has_topic(self, topic_id: str) -> bool:
        return any(
            isinstance(item, TopicApplicationItem) and item.topic_id == topic_id
            for item in self.checklist
        )

    def required_items_done(self) -> bool:
        """True when every required item is completed or skipped."""
        return all(
            item.status in (ItemStatus.COMPLETED, ItemStatus.SKIPPED)
            for item in self.checklist
            if item.required
        )


class Phase(BaseModel):
    """Runtime state of one phase."""
    id: str
    name: str
    description: str = ""
    mode: PhaseMode = PhaseMode.GUIDED
    required: bool = True
    task: Optional[PhaseTask] = None
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[dict[str, Any]] = None

    @property
    def is_done(self) -> bool:
        return self.status in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED)

    def start(self) -> None:
        if self.status == PhaseStatus.PENDING:
            self.status = PhaseStatus.IN_PROGRESS
            self.started_at = _utc_now()

    def finish(self, status: PhaseStatus = PhaseStatus.COMPLETED) -> None:
        if self.is_done:
            return
        self.status = status
        self.completed_at = _utc_now()


class WorkflowOptions(BaseModel):
    """Option bag supplied to start(). Unknown keys are kept."""
    model_config = ConfigDict(extra='allow')

    include_patterns: Optional[list[str]] = None
    exclude_patterns: Optional[list[str]] = None
    priority_patterns: list[str] = Field(default_factory=list)
    max_files: Optional[int] = None
    bc_version: Optional[str] = None
    source_version: Optional[str] = None
    target_version: Optional[str] = None

    def has_option(self, name: str) -> bool:
        value = getattr(self, name, None)
        if value is None and self.model_extra:
            value = self.model_extra.get(name)
        return value not in (None, "")


class InstanceTypeSummary(BaseModel):
    count: int = 0
    auto_fixable: int = 0
    needs_review: int = 0


class DiscoverySummary(BaseModel):
    """Outcome of an autonomous pattern scan."""
    files_scanned: int = 0
    files_with_matches: int = 0
    total_instances: int = 0
    by_type: dict[str, InstanceTypeSummary] = Field(default_factory=dict)
    errors: int = 0
    completed: bool = True
    timed_out: bool = False


class WorkflowSession(BaseModel):
    """One execution of a workflow definition. Canonical persisted record."""
    id: str
    workflow_type: str
    workflow_name: str = ""
    scope_root: str
    status: SessionStatus = SessionStatus.PENDING
    current_phase_id: Optional[str] = None
    current_file_index: int = 0
    phases: list[Phase] = Field(default_factory=list)
    files: list[FileEntry] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)
    proposed_changes: list[ProposedChange] = Field(default_factory=list)
    files_total: int = 0
    files_completed: int = 0
    instances_total: int = 0
    instances_completed: int = 0
    instances_auto_fixed: int = 0
    instances_manual_review: int = 0
    options: WorkflowOptions = Field(default_factory=WorkflowOptions)
    definition: Optional[WorkflowDefinition] = None  # Snapshot taken at start
    discovery: Optional[DiscoverySummary] = None
    specialist: Optional[str] = None
    cancel_reason: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None

    def update_timestamp(self):
        self.updated_at = _utc_now()

    @property
    def is_closed(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.FAILED)

    def get_phase(self, phase_id: Optional[str]) -> Optional[Phase]:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def get_file(self, path: str) -> Optional[FileEntry]:
        for entry in self.files:
            if entry.path == path:
                return entry
        return None

    def find_item(self, item_id: str) -> Optional[tuple[FileEntry, ChecklistItemBase]]:
        for entry in self.files:
            item = entry.get_item(item_id)
            if item is not None:
                return entry, item
        return None

    def iter_pattern_items(self) -> Iterator[tuple[FileEntry, PatternInstanceItem]]:
        for entry in self.files:
            for item in entry.checklist:
                if isinstance(item, PatternInstanceItem):
                    yield entry, item

    def file_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in FileStatus}
        for entry in self.files:
            counts[entry.status.value] += 1
        return counts


class NextAction(BaseModel):
    """The single action the agent must perform next."""
    type: NextActionType
    phase_id: Optional[str] = None
    file: Optional[str] = None
    file_index: Optional[int] = None
    checklist_item_id: Optional[str] = None
    description: str = ""
    instruction: str = ""
    topic_id: Optional[str] = None
    instance: Optional[PatternMatch] = None
    tool_call: Optional[dict[str, Any]] = None
    options: list[str] = Field(default_factory=list)


class CompletedAction(BaseModel):
    """What the agent reports having done."""
    action: str
    status: str = "completed"
    file: Optional[str] = None
    checklist_item_id: Optional[str] = None
    phase_id: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    skip_reason: Optional[str] = None
    error: Optional[str] = None


class ChecklistExpansion(BaseModel):
    """A topic the agent wants added to the current file's checklist."""
    topic_id: str
    description: Optional[str] = None
    relevance_score: Optional[float] = None
    required: bool = True
    phase_id: Optional[str] = None


class BatchFilter(BaseModel):
    """Selection of pattern-instance items for a batch operation."""
    instance_types: Optional[list[str]] = None
    file_patterns: Optional[list[str]] = None
    status: Optional[list[ItemStatus]] = None
    auto_fixable_only: bool = False

    @field_validator('status', mode='before')
    @classmethod
    def status_as_list(cls, v):
        if isinstance(v, (str, ItemStatus)):
            return [v]
        return v

    @field_validator('instance_types', 'file_patterns', 'status')
    @classmethod
    def normalize_list(cls, v):
        if v is None:
            return None
        return sorted(set(v), key=lambda x: x.value if isinstance(x, Enum) else x)

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode='json')


class ConfirmationToken(BaseModel):
    """Single-use authorization for one batch mutation."""
    model_config = ConfigDict(frozen=True)

    token: str
    session_id: str
    operation: BatchOperation
    filter: BatchFilter
    instance_count: int
    issued_at: datetime = Field(default_factory=_utc_now)


# ============================================================================
# Events
# ============================================================================

class EventType(str, Enum):
    SESSION_STARTED = "session_started"
    PHASE_COMPLETED = "phase_completed"
    PROGRESS_REPORTED = "progress_reported"
    CHECKLIST_EXPANDED = "checklist_expanded"
    BATCH_EXECUTED = "batch_executed"
    SESSION_COMPLETED = "session_completed"
    SESSION_CANCELLED = "session_cancelled"


class SessionEvent(BaseModel):
    """An event in the session history."""
    timestamp: datetime = Field(default_factory=_utc_now)
    event_type: EventType
    session_id: str
    phase_id: Optional[str] = None
    file: Optional[str] = None
    item_id: Optional[str] = None
    message: str = ""
    details: dict = Field(default_factory=dict)
