"""
Definition Registry

Holds the workflow definitions an engine instance can start: the bundled
built-ins plus custom definitions registered at runtime or loaded from
layer directories. Custom definitions shadow built-ins only when the
caller explicitly allows it.

Definitions are validated at registration so malformed pattern data is
rejected before any session uses it.
"""

import logging
import re
import threading
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import ValidationError

from .config import get_bundled_workflows_dir
from .error_handling import InvalidDefinition, UnknownWorkflowType
from .patterns import OTHER_INSTANCE_TYPE, compile_regex
from .schema import PhaseMode, PhaseTask, WorkflowDefinition

logger = logging.getLogger(__name__)


def load_definition_file(path: Path) -> WorkflowDefinition:
    """
    Load one workflow definition from YAML.

    Raises:
        InvalidDefinition: If the file is not valid YAML or not a valid definition
    """
    path = Path(path)
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidDefinition(f"Invalid YAML in {path}: {e}", path=str(path))
    except OSError as e:
        raise InvalidDefinition(f"Cannot read {path}: {e}", path=str(path))

    if not isinstance(data, dict):
        raise InvalidDefinition(f"{path} does not contain a workflow definition", path=str(path))
    return parse_definition(data, source=str(path))


def parse_definition(data: dict[str, Any], source: str = "<dict>") -> WorkflowDefinition:
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        raise InvalidDefinition(f"Invalid workflow definition in {source}: {e}", source=source)


def validate_definition(definition: WorkflowDefinition) -> list[str]:
    """
    Check a definition's internal references and pattern data.

    Returns:
        Warnings that do not prevent registration (shadowed classifier
        rules, transformations nobody can select)

    Raises:
        InvalidDefinition: On malformed regexes, duplicate ids or dangling references
    """
    errors: list[str] = []
    warnings: list[str] = []

    phase_ids = [p.id for p in definition.phases]
    if len(set(phase_ids)) != len(phase_ids):
        errors.append("duplicate phase ids")
    phases = {p.id: p for p in definition.phases}

    def bindable(phase_id: str, what: str) -> None:
        phase = phases.get(phase_id)
        if phase is None:
            errors.append(f"{what} references unknown phase '{phase_id}'")
        elif phase.mode != PhaseMode.GUIDED and phase.task != PhaseTask.PATTERN_SCAN:
            errors.append(f"{what} is bound to autonomous phase '{phase_id}' that no task completes")

    template_ids = [t.id for t in definition.per_file_checklist]
    if len(set(template_ids)) != len(template_ids):
        errors.append("duplicate checklist template ids")
    for template in definition.per_file_checklist:
        if template.phase:
            bindable(template.phase, f"checklist item '{template.id}'")
    if definition.per_file_checklist and definition.default_guided_phase() is None:
        if any(t.phase is None for t in definition.per_file_checklist):
            errors.append("checklist items without a phase need a guided phase")

    if definition.topic_discovery.phase:
        bindable(definition.topic_discovery.phase, "topic_discovery")

    discovery = definition.pattern_discovery
    if discovery.phase:
        bindable(discovery.phase, "pattern_discovery")
    has_scan_phase = any(p.task == PhaseTask.PATTERN_SCAN for p in definition.phases)
    if discovery.enabled and discovery.patterns and not has_scan_phase:
        warnings.append("pattern_discovery is enabled but no phase runs the pattern_scan task")
    if discovery.enabled and not discovery.phase:
        for phase in definition.phases:
            if phase.task == PhaseTask.PATTERN_SCAN and definition.default_guided_phase(after=phase.id) is None:
                errors.append(f"no guided phase after '{phase.id}' to receive pattern instances")

    pattern_ids = [p.id for p in discovery.patterns]
    if len(set(pattern_ids)) != len(pattern_ids):
        errors.append("duplicate pattern ids")

    for pattern in discovery.patterns:
        where = f"pattern '{pattern.id}'"
        for label, regex, flags in [("regex", pattern.regex, pattern.flags),
                                    ("exclude_regex", pattern.exclude_regex, pattern.flags)]:
            if regex is None:
                continue
            try:
                compile_regex(regex, flags)
            except (re.error, ValueError) as e:
                errors.append(f"{where} {label} is malformed: {e}")

        seen_rules: dict[str, str] = {}
        seen_patterns: dict[tuple[str, str], str] = {}
        for rule in pattern.rules:
            if rule.name in seen_rules:
                errors.append(f"{where} has duplicate rule '{rule.name}'")
            seen_rules[rule.name] = rule.pattern
            try:
                compile_regex(rule.pattern, rule.flags)
            except (re.error, ValueError) as e:
                errors.append(f"{where} rule '{rule.name}' is malformed: {e}")
            key = (rule.pattern, rule.flags)
            if key in seen_patterns:
                warnings.append(
                    f"{where} rule '{rule.name}' is shadowed by earlier rule "
                    f"'{seen_patterns[key]}' with the same pattern"
                )
            else:
                seen_patterns[key] = rule.name

        for instance_type in pattern.transformations:
            if instance_type not in seen_rules and instance_type != OTHER_INSTANCE_TYPE:
                warnings.append(f"{where} transformation '{instance_type}' matches no rule")

    for option in definition.required_options:
        if not option:
            errors.append("empty required option name")

    if errors:
        raise InvalidDefinition(
            f"Workflow definition '{definition.type}' is invalid: {'; '.join(errors)}",
            workflow_type=definition.type,
            errors=errors,
        )
    for warning in warnings:
        logger.warning(f"Workflow definition '{definition.type}': {warning}")
    return warnings


class DefinitionRegistry:
    """
    Workflow definitions known to one engine instance.

    Lookups check custom definitions first, then built-ins.
    """

    def __init__(self, load_builtins: bool = True, builtins_dir: Optional[Path] = None):
        self._builtin: dict[str, WorkflowDefinition] = {}
        self._custom: dict[str, WorkflowDefinition] = {}
        self._lock = threading.Lock()

        if load_builtins:
            directory = builtins_dir or get_bundled_workflows_dir()
            for definition in self._read_directory(Path(directory)):
                validate_definition(definition)
                self._builtin[definition.type] = definition

    @staticmethod
    def _read_directory(directory: Path) -> list[WorkflowDefinition]:
        files = sorted(list(directory.glob('*.yaml')) + list(directory.glob('*.yml')))
        return [load_definition_file(f) for f in files]

    def register(
        self,
        definition: Union[WorkflowDefinition, dict[str, Any]],
        allow_override_builtin: bool = False,
    ) -> list[str]:
        """
        Register a custom definition.

        Args:
            definition: Definition model or raw mapping
            allow_override_builtin: Permit shadowing a built-in type

        Returns:
            Validation warnings

        Raises:
            InvalidDefinition: If the definition is malformed, or shadows a
                built-in without permission
        """
        if isinstance(definition, dict):
            definition = parse_definition(definition)
        warnings = validate_definition(definition)

        with self._lock:
            if definition.type in self._builtin and not allow_override_builtin:
                raise InvalidDefinition(
                    f"Cannot override built-in workflow '{definition.type}' "
                    f"without allow_override_builtin",
                    workflow_type=definition.type,
                )
            self._custom[definition.type] = definition

        logger.info(f"Registered workflow definition '{definition.type}'")
        return warnings

    def unregister(self, workflow_type: str) -> bool:
        """Remove a custom definition. Built-ins cannot be removed."""
        with self._lock:
            removed = self._custom.pop(workflow_type, None)
        return removed is not None

    def clear_custom(self) -> None:
        with self._lock:
            self._custom.clear()

    def get(self, workflow_type: str) -> WorkflowDefinition:
        """
        Raises:
            UnknownWorkflowType: If the type is neither custom nor built-in
        """
        with self._lock:
            definition = self._custom.get(workflow_type) or self._builtin.get(workflow_type)
        if definition is None:
            raise UnknownWorkflowType(workflow_type, self.list_available())
        return definition

    def is_available(self, workflow_type: str) -> bool:
        with self._lock:
            return workflow_type in self._custom or workflow_type in self._builtin

    def is_builtin(self, workflow_type: str) -> bool:
        return workflow_type in self._builtin

    def list_available(self) -> list[str]:
        with self._lock:
            return sorted(set(self._builtin) | set(self._custom))

    def list_builtin(self) -> list[str]:
        return sorted(self._builtin)

    def list_custom(self) -> list[str]:
        with self._lock:
            return sorted(self._custom)

    def describe(self) -> list[dict[str, Any]]:
        """Summaries of every available definition."""
        result = []
        for workflow_type in self.list_available():
            definition = self.get(workflow_type)
            result.append({
                "type": definition.type,
                "name": definition.name,
                "description": definition.description,
                "builtin": workflow_type in self._builtin,
                "overridden": workflow_type in self._builtin and workflow_type in self._custom,
                "phases": [p.id for p in definition.phases],
                "required_options": list(definition.required_options),
            })
        return result

    def load_directory(self, directory: Path, allow_override_builtin: bool = True) -> list[str]:
        """
        Register every YAML definition in a layer directory.

        Returns:
            Types that were registered
        """
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning(f"Definition layer directory not found: {directory}")
            return []
        registered = []
        for definition in self._read_directory(directory):
            self.register(definition, allow_override_builtin=allow_override_builtin)
            registered.append(definition.type)
        return registered
