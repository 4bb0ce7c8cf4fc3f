"""
Batch Operation Executor

Bulk mutations over pattern-instance checklist items, gated by a two-step
protocol: a dry run previews the affected items and mints a confirmation
token, and an execute call that presents the token applies the operation.

The filter is re-resolved on execute, so items finished between the dry
run and the execute are left alone rather than applied twice.
"""

import fnmatch
import logging
from collections import Counter, defaultdict
from typing import Any, Optional, Union

from pydantic import ValidationError

from .error_handling import InvalidOperation
from .patterns import PatternDiscoveryEngine
from .schema import (
    OPEN_ITEM_STATUSES,
    BatchFilter,
    BatchOperation,
    EventType,
    FileEntry,
    ItemStatus,
    PatternInstanceItem,
    SessionEvent,
    WorkflowDefinition,
    WorkflowSession,
)
from .session_manager import WorkflowSessionManager, finish_item
from .tokens import TokenStore

logger = logging.getLogger(__name__)

PREVIEW_SAMPLE_SIZE = 5

OPERATION_DESCRIPTIONS = {
    BatchOperation.APPLY_FIXES: "apply suggested fixes to",
    BatchOperation.SKIP_INSTANCES: "skip",
    BatchOperation.FLAG_FOR_REVIEW: "flag for manual review",
}


def select_items(session: WorkflowSession, batch_filter: BatchFilter,
                 default_statuses=None) -> list[tuple[FileEntry, PatternInstanceItem]]:
    """Pattern-instance items matching a filter, in inventory order."""
    types = {t.lower() for t in batch_filter.instance_types or []}
    substrings = [p.lower() for p in batch_filter.file_patterns or []]
    statuses = set(batch_filter.status) if batch_filter.status is not None else default_statuses

    selected = []
    for entry, item in session.iter_pattern_items():
        match = item.match
        if types and match.instance_type.lower() not in types:
            continue
        if substrings and not any(_path_matches(entry.path, p) for p in substrings):
            continue
        if statuses is not None and item.status not in statuses:
            continue
        if batch_filter.auto_fixable_only and not (match.auto_fixable and not match.requires_manual_review):
            continue
        selected.append((entry, item))
    return selected


def _path_matches(path: str, pattern: str) -> bool:
    lowered = path.lower()
    if any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatchcase(lowered, pattern)
    return pattern in lowered


class BatchOperationExecutor:
    """Dry-run / confirm / execute over a session's pattern instances."""

    def __init__(self, manager: WorkflowSessionManager, tokens: TokenStore,
                 discovery: Optional[PatternDiscoveryEngine] = None):
        self.manager = manager
        self.tokens = tokens
        self.discovery = discovery or manager.discovery

    def run(
        self,
        session_id: str,
        operation: Union[BatchOperation, str],
        batch_filter: Union[BatchFilter, dict, None] = None,
        dry_run: bool = True,
        confirmation_token: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Dispatch one batch request.

        Raises:
            SessionNotFound: If the session does not exist
            InvalidOperation: On an unknown operation or malformed filter
            InvalidOrExpiredToken: If the token is missing, used or mismatched
        """
        try:
            operation = BatchOperation(operation)
        except ValueError:
            raise InvalidOperation(
                f"Unknown batch operation '{operation}'. "
                f"Expected one of: {', '.join(o.value for o in BatchOperation)}",
                field="operation",
                value=str(operation),
            )
        request_filter = self._parse_filter(batch_filter)

        if operation == BatchOperation.GROUP_BY_TYPE:
            return self.group_by_type(session_id, request_filter or BatchFilter())
        if confirmation_token:
            return self.execute(session_id, operation, confirmation_token, request_filter)
        if not dry_run:
            raise InvalidOperation(
                "Executing a batch operation requires the confirmation_token from a dry run",
                field="confirmation_token",
            )
        return self.dry_run(session_id, operation, request_filter or BatchFilter())

    @staticmethod
    def _parse_filter(batch_filter: Union[BatchFilter, dict, None]) -> Optional[BatchFilter]:
        if batch_filter is None or isinstance(batch_filter, BatchFilter):
            return batch_filter
        try:
            return BatchFilter.model_validate(batch_filter)
        except ValidationError as e:
            raise InvalidOperation(f"Invalid batch filter: {e}", field="filter")

    def dry_run(self, session_id: str, operation: BatchOperation, batch_filter: BatchFilter) -> dict[str, Any]:
        """Preview an operation and mint its confirmation token. Never mutates the session."""
        with self.manager.store.lock(session_id):
            session = self.manager.store.load(session_id)
            selected = select_items(session, batch_filter, OPEN_ITEM_STATUSES)
            token = self.tokens.issue(session_id, operation, batch_filter, len(selected))

        by_type = Counter(item.match.instance_type for _, item in selected)
        files = {entry.path for entry, _ in selected}
        description = OPERATION_DESCRIPTIONS[operation]
        logger.info(f"Dry run {operation.value} on {session_id}: {len(selected)} instances")

        return {
            "dry_run": True,
            "operation": operation.value,
            "filter": batch_filter.snapshot(),
            "instances_affected": len(selected),
            "files_affected": len(files),
            "by_instance_type": dict(by_type),
            "preview": [self.discovery.preview_change(item.match) for _, item in selected[:PREVIEW_SAMPLE_SIZE]],
            "confirmation_token": token.token,
            "confirmation_prompt": (
                f"This will {description} {len(selected)} instances across {len(files)} files. "
                f"Call workflow_batch again with confirmation_token={token.token} to proceed."
            ),
        }

    def execute(self, session_id: str, operation: BatchOperation, confirmation_token: str,
                batch_filter: Optional[BatchFilter] = None) -> dict[str, Any]:
        """
        Apply a previewed operation. The token is consumed before anything
        else happens, so a failed execute cannot be replayed either.
        """
        with self.manager.store.lock(session_id):
            issued = self.tokens.consume(confirmation_token, session_id, operation, batch_filter)

            def mutate(session: WorkflowSession, definition: WorkflowDefinition) -> dict[str, Any]:
                return self._apply(session, operation, issued.filter)

            session, outcome = self.manager.apply_mutation(session_id, mutate)

        self.manager.store.append_event(SessionEvent(
            event_type=EventType.BATCH_EXECUTED,
            session_id=session_id,
            message=f"{operation.value}: {outcome['instances_modified']} modified, "
                    f"{outcome['instances_failed']} failed",
            details={"token": confirmation_token, "filter": issued.filter.snapshot()},
        ))
        logger.info(f"Executed {operation.value} on {session_id}: "
                    f"{outcome['instances_modified']} modified, {outcome['instances_failed']} failed")

        outcome.update({
            "dry_run": False,
            "operation": operation.value,
            "expected_instances": issued.instance_count,
            "progress": self.manager.build_progress(session),
            "next_action": self.manager.compute_next_action(session).model_dump(mode='json', exclude_none=True),
        })
        return outcome

    def _apply(self, session: WorkflowSession, operation: BatchOperation,
               batch_filter: BatchFilter) -> dict[str, Any]:
        selected = select_items(session, batch_filter, OPEN_ITEM_STATUSES)

        failures = []
        modified_files, failed_files = set(), set()
        modified = 0
        for entry, item in selected:
            try:
                self._apply_one(item, operation)
            except ValueError as e:
                failures.append({
                    "file": entry.path,
                    "line": item.match.line_number,
                    "checklist_item_id": item.id,
                    "error": str(e),
                })
                failed_files.add(entry.path)
                continue
            modified += 1
            modified_files.add(entry.path)

        return {
            "instances_modified": modified,
            "instances_failed": len(failures),
            "files_modified": len(modified_files),
            "files_failed": len(failed_files),
            "failures": failures,
        }

    @staticmethod
    def _apply_one(item: PatternInstanceItem, operation: BatchOperation) -> None:
        if operation == BatchOperation.FLAG_FOR_REVIEW:
            item.match = item.match.model_copy(update={"requires_manual_review": True})
            return

        if item.is_terminal:
            raise ValueError(f"instance is already {item.status.value}")
        if operation == BatchOperation.APPLY_FIXES:
            replacement = item.match.suggested_replacement
            if not replacement:
                raise ValueError("no suggested replacement is available")
            finish_item(
                item, ItemStatus.COMPLETED,
                result={"applied": True, "replacement": replacement, "auto_fixed": True},
            )
        else:
            finish_item(item, ItemStatus.SKIPPED, skip_reason="Skipped by batch operation")

    def group_by_type(self, session_id: str, batch_filter: BatchFilter) -> dict[str, Any]:
        session = self.manager.store.load(session_id)
        groups: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for entry, item in select_items(session, batch_filter):
            groups[item.match.instance_type].append({
                "file": entry.path,
                "line": item.match.line_number,
                "checklist_item_id": item.id,
                "match": item.match.matched_text,
                "status": item.status.value,
                "auto_fixable": item.match.auto_fixable,
            })
        return {
            "operation": BatchOperation.GROUP_BY_TYPE.value,
            "total": sum(len(g) for g in groups.values()),
            "groups": dict(groups),
        }
