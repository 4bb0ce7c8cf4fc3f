"""Tests for batch operations over pattern instances"""

import pytest

from workflow_engine.batch import select_items
from workflow_engine.error_handling import InvalidOperation, InvalidOrExpiredToken, SessionNotFound
from workflow_engine.schema import BatchFilter, EventType, ItemStatus, NextActionType

MIGRATION = "error-to-errorinfo-migration"


@pytest.fixture
def session_id(engine, error_workspace):
    return engine.manager.start(MIGRATION, error_workspace).session.id


def literal_filter():
    return {"instance_types": ["literal"]}


class TestSelection:
    """Tests for select_items"""

    def test_filter_by_type(self, engine, session_id):
        session = engine.store.load(session_id)
        selected = select_items(session, BatchFilter(instance_types=["LITERAL"]))
        assert len(selected) == 3

    def test_filter_by_file_substring(self, engine, session_id):
        session = engine.store.load(session_id)
        selected = select_items(session, BatchFilter(file_patterns=["posting"]))
        assert {entry.path for entry, _ in selected} == {"src/PostingChecks.Codeunit.al"}

    def test_filter_by_file_glob(self, engine, session_id):
        session = engine.store.load(session_id)
        selected = select_items(session, BatchFilter(file_patterns=["src/order*"]))
        assert len(selected) == 3

    def test_auto_fixable_only(self, engine, session_id):
        session = engine.store.load(session_id)
        selected = select_items(session, BatchFilter(auto_fixable_only=True))
        assert {item.match.instance_type for _, item in selected} == {"literal"}


class TestDryRun:
    """Tests for the preview step"""

    def test_dry_run_counts(self, engine, session_id):
        result = engine.batch.run(session_id, "apply_fixes", literal_filter())

        assert result["dry_run"] is True
        assert result["instances_affected"] == 3
        assert result["files_affected"] == 2
        assert result["by_instance_type"] == {"literal": 3}
        assert result["confirmation_token"].startswith("batch-")
        assert "3 instances across 2 files" in result["confirmation_prompt"]

    def test_dry_run_preview(self, engine, session_id):
        preview = engine.batch.run(session_id, "apply_fixes", literal_filter())["preview"]

        assert len(preview) == 3
        assert preview[0]["after"] == "Error(ErrorInfo.Create('Customer is blocked'))"

    def test_dry_run_does_not_mutate(self, engine, session_id):
        """The session is unchanged by a preview"""
        before = engine.store.load(session_id)
        engine.batch.run(session_id, "apply_fixes", literal_filter())
        after = engine.store.load(session_id)

        assert after.version == before.version
        assert after.instances_completed == 0

    def test_unknown_operation(self, engine, session_id):
        with pytest.raises(InvalidOperation) as exc_info:
            engine.batch.run(session_id, "delete_everything")
        assert exc_info.value.details["field"] == "operation"

    def test_bad_filter(self, engine, session_id):
        with pytest.raises(InvalidOperation):
            engine.batch.run(session_id, "apply_fixes", {"status": ["nonsense"]})

    def test_execute_without_token(self, engine, session_id):
        with pytest.raises(InvalidOperation) as exc_info:
            engine.batch.run(session_id, "apply_fixes", literal_filter(), dry_run=False)
        assert exc_info.value.details["field"] == "confirmation_token"

    def test_unknown_session(self, engine):
        with pytest.raises(SessionNotFound):
            engine.batch.run("wf-missing", "apply_fixes")


class TestExecute:
    """Tests for the confirmed step"""

    def test_apply_fixes(self, engine, session_id):
        """Exactly the literal instances complete, text constants stay open"""
        token = engine.batch.run(session_id, "apply_fixes", literal_filter())["confirmation_token"]
        result = engine.batch.run(session_id, "apply_fixes", literal_filter(),
                                  dry_run=False, confirmation_token=token)

        assert result["dry_run"] is False
        assert result["instances_modified"] == 3
        assert result["instances_failed"] == 0
        assert result["files_modified"] == 2
        assert result["expected_instances"] == 3

        session = engine.store.load(session_id)
        statuses = {}
        for _, item in session.iter_pattern_items():
            statuses.setdefault(item.match.instance_type, []).append(item.status)
        assert statuses["literal"] == [ItemStatus.COMPLETED] * 3
        assert statuses["text_constant"] == [ItemStatus.PENDING] * 2
        assert session.instances_completed == 3
        assert session.instances_auto_fixed == 3
        assert session.instances_manual_review == 2

    def test_next_action_moves_to_review_items(self, engine, session_id):
        token = engine.batch.run(session_id, "apply_fixes", literal_filter())["confirmation_token"]
        result = engine.batch.run(session_id, "apply_fixes", confirmation_token=token)

        assert result["next_action"]["type"] == NextActionType.CONVERT_INSTANCE.value
        assert result["next_action"]["instance"]["instance_type"] == "text_constant"
        assert result["progress"]["instances_auto_fixed"] == 3

    def test_applied_result_recorded(self, engine, session_id):
        token = engine.batch.run(session_id, "apply_fixes", literal_filter())["confirmation_token"]
        engine.batch.run(session_id, "apply_fixes", confirmation_token=token)

        session = engine.store.load(session_id)
        _, item = next(iter(session.iter_pattern_items()))
        assert item.result["replacement"] == "Error(ErrorInfo.Create('Customer is blocked'))"
        assert item.result["auto_fixed"] is True

    def test_token_is_single_use(self, engine, session_id):
        token = engine.batch.run(session_id, "apply_fixes", literal_filter())["confirmation_token"]
        engine.batch.run(session_id, "apply_fixes", confirmation_token=token)

        with pytest.raises(InvalidOrExpiredToken):
            engine.batch.run(session_id, "apply_fixes", confirmation_token=token)

    def test_token_bound_to_operation(self, engine, session_id):
        token = engine.batch.run(session_id, "apply_fixes", literal_filter())["confirmation_token"]
        with pytest.raises(InvalidOrExpiredToken):
            engine.batch.run(session_id, "skip_instances", confirmation_token=token)

    def test_token_bound_to_filter(self, engine, session_id):
        token = engine.batch.run(session_id, "apply_fixes", literal_filter())["confirmation_token"]
        with pytest.raises(InvalidOrExpiredToken):
            engine.batch.run(session_id, "apply_fixes", {"instance_types": ["text_constant"]},
                             confirmation_token=token)

    def test_items_finished_after_dry_run_are_left_alone(self, engine, session_id):
        """An instance reported between preview and execute is not applied twice"""
        token = engine.batch.run(session_id, "apply_fixes", literal_filter())["confirmation_token"]
        _, action = engine.manager.next(session_id)
        engine.manager.report_progress(session_id, {
            "action": "convert_instance",
            "checklist_item_id": action.checklist_item_id,
        })

        result = engine.batch.run(session_id, "apply_fixes", confirmation_token=token)

        assert result["instances_modified"] == 2
        assert result["expected_instances"] == 3
        assert engine.store.load(session_id).instances_auto_fixed == 2

    def test_skip_instances(self, engine, session_id):
        flt = {"instance_types": ["text_constant"]}
        token = engine.batch.run(session_id, "skip_instances", flt)["confirmation_token"]
        result = engine.batch.run(session_id, "skip_instances", flt, confirmation_token=token)

        assert result["instances_modified"] == 2
        session = engine.store.load(session_id)
        skipped = [i for _, i in session.iter_pattern_items() if i.status == ItemStatus.SKIPPED]
        assert len(skipped) == 2
        assert all(i.skip_reason for i in skipped)

    def test_flag_for_review(self, engine, session_id):
        token = engine.batch.run(session_id, "flag_for_review", literal_filter())["confirmation_token"]
        result = engine.batch.run(session_id, "flag_for_review", confirmation_token=token)

        assert result["instances_modified"] == 3
        session = engine.store.load(session_id)
        assert session.instances_manual_review == 5
        assert all(i.status == ItemStatus.PENDING for _, i in session.iter_pattern_items())

    def test_batch_event_logged(self, engine, session_id):
        token = engine.batch.run(session_id, "apply_fixes", literal_filter())["confirmation_token"]
        engine.batch.run(session_id, "apply_fixes", confirmation_token=token)

        events = engine.store.read_events(session_id)
        assert events[-1].event_type == EventType.BATCH_EXECUTED

    def test_full_migration(self, engine, session_id):
        """Batch the literals, convert the rest by hand, then finish"""
        manager = engine.manager
        token = engine.batch.run(session_id, "apply_fixes", literal_filter())["confirmation_token"]
        engine.batch.run(session_id, "apply_fixes", confirmation_token=token)

        _, action = manager.next(session_id)
        while action.type not in (NextActionType.COMPLETE_WORKFLOW, NextActionType.USER_DECISION):
            action = manager.report_progress(session_id, {
                "action": action.type.value,
                "checklist_item_id": action.checklist_item_id,
            }).next_action

        assert action.type == NextActionType.COMPLETE_WORKFLOW
        summary = manager.complete(session_id).summary
        assert summary["files_completed"] == 2
        assert summary["instances"]["auto_fixed"] == 3


class TestGroupByType:

    def test_group_by_type(self, engine, session_id):
        result = engine.batch.run(session_id, "group_by_type")

        assert result["total"] == 5
        assert len(result["groups"]["literal"]) == 3
        assert len(result["groups"]["text_constant"]) == 2
        assert result["groups"]["literal"][0]["line"] == 5

    def test_group_by_type_needs_no_token(self, engine, session_id):
        """Grouping is read only and never mints a token"""
        before = len(engine.tokens)
        engine.batch.run(session_id, "group_by_type", dry_run=False)
        assert len(engine.tokens) == before
