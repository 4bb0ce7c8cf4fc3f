"""Tests for the agent-facing tool surface"""

import pytest

from workflow_engine.tools import WorkflowEngine, WorkflowToolRegistry

TOOL_NAMES = [
    "workflow_start",
    "workflow_next",
    "workflow_progress",
    "workflow_batch",
    "workflow_complete",
    "workflow_status",
    "workflow_cancel",
    "workflow_list",
]


@pytest.fixture
def tools(engine):
    return WorkflowToolRegistry(engine)


@pytest.fixture
def started(tools, al_workspace):
    return tools.execute("workflow_start", {"workflow_type": "code-review", "scope_root": str(al_workspace)})


class TestRegistry:

    def test_all_tools_registered(self, tools):
        assert tools.list_tools() == TOOL_NAMES

    def test_unknown_tool(self, tools):
        result = tools.execute("workflow_explode")
        assert result["is_error"] is True
        assert result["error"] == "unknown_tool"

    def test_missing_argument(self, tools):
        result = tools.execute("workflow_next", {})
        assert result["is_error"] is True
        assert result["error"] == "invalid_arguments"
        assert result["details"]["field"] == "session_id"

    def test_engine_errors_are_structured(self, tools, al_workspace):
        """Engine failures come back as data, never as exceptions"""
        result = tools.execute("workflow_start", {"workflow_type": "nope", "scope_root": str(al_workspace)})

        assert result["is_error"] is True
        assert result["error"] == "unknown_workflow_type"
        assert "code-review" in result["details"]["available_types"]

    def test_unexpected_errors_are_structured(self, tools, monkeypatch):
        def boom(session_id):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(tools.engine.manager, "next", boom)
        result = tools.execute("workflow_next", {"session_id": "wf-x"})

        assert result["error"] == "internal_error"
        assert "disk on fire" in result["message"]

    def test_engines_are_isolated(self, tmp_path):
        """Custom definitions registered on one engine are invisible to another"""
        first = WorkflowEngine(base_dir=tmp_path / "a")
        second = WorkflowEngine(base_dir=tmp_path / "b")
        first.registry.register({
            "type": "local-only",
            "name": "Local",
            "phases": [{"id": "review", "name": "Review"}],
        })

        assert first.registry.is_available("local-only")
        assert not second.registry.is_available("local-only")


class TestWorkflowTools:

    def test_start(self, started):
        assert started["status"] == "in_progress"
        assert started["file_inventory_summary"]["total"] == 3
        assert started["file_inventory_summary"]["by_object_type"] == {"Table": 1, "Page": 1, "Codeunit": 1}
        assert started["next_action"]["type"] == "analyze_file"
        assert started["progress"]["files_pending"] + started["progress"]["files_in_progress"] == 3
        assert "discovery_summary" not in started

    def test_start_with_discovery(self, tools, error_workspace):
        result = tools.execute("workflow_start", {
            "workflow_type": "error-to-errorinfo-migration",
            "scope_root": str(error_workspace),
        })
        assert result["discovery_summary"]["total_instances"] == 5
        assert result["next_action"]["instance"]["instance_type"] == "literal"

    def test_next_and_progress(self, tools, started):
        session_id = started["session_id"]
        action = tools.execute("workflow_next", {"session_id": session_id})["next_action"]
        assert action == started["next_action"]

        result = tools.execute("workflow_progress", {
            "session_id": session_id,
            "completed_action": {"action": action["type"], "checklist_item_id": action["checklist_item_id"]},
            "findings": [{"description": "Missing caption", "severity": "info"}],
            "expand_checklist": [{"topic_id": "ui/captions", "relevance_score": 0.9}],
        })

        assert len(result["expanded_item_ids"]) == 1
        assert result["next_action"]["file"] == "src/CustomerCard.Page.al"
        assert result["progress"]["files_in_progress"] >= 1

    def test_progress_validation_error(self, tools, started):
        result = tools.execute("workflow_progress", {
            "session_id": started["session_id"],
            "completed_action": {"action": "analyze_file", "checklist_item_id": "nope"},
        })
        assert result["error"] == "invalid_completed_action"

    def test_batch_round_trip(self, tools, error_workspace):
        session_id = tools.execute("workflow_start", {
            "workflow_type": "error-to-errorinfo-migration",
            "scope_root": str(error_workspace),
        })["session_id"]
        args = {"session_id": session_id, "operation": "apply_fixes", "filter": {"instance_types": ["literal"]}}

        preview = tools.execute("workflow_batch", args)
        executed = tools.execute("workflow_batch", {**args, "dry_run": False,
                                                    "confirmation_token": preview["confirmation_token"]})
        replay = tools.execute("workflow_batch", {**args, "dry_run": False,
                                                  "confirmation_token": preview["confirmation_token"]})

        assert executed["instances_modified"] == 3
        assert replay["error"] == "invalid_or_expired_token"

    def test_complete_and_status(self, tools, started):
        session_id = started["session_id"]
        completed = tools.execute("workflow_complete", {"session_id": session_id, "report_format": "json"})
        status = tools.execute("workflow_status", {"session_id": session_id})

        assert completed["status"] == "completed"
        assert completed["report"].startswith("{")
        assert "report_path" not in completed
        assert status["progress"]["status"] == "completed"
        assert status["next_action"]["type"] == "complete_workflow"

    def test_cancel_without_session_lists_active(self, tools, started):
        result = tools.execute("workflow_cancel", {})
        assert [s["session_id"] for s in result["active_sessions"]] == [started["session_id"]]

    def test_cancel(self, tools, started):
        result = tools.execute("workflow_cancel", {"session_id": started["session_id"], "reason": "Done"})
        assert result["status"] == "failed"
        assert result["cancel_reason"] == "Done"

        again = tools.execute("workflow_cancel", {"session_id": started["session_id"]})
        assert again["error"] == "session_closed"

    def test_cancel_all(self, tools, started):
        result = tools.execute("workflow_cancel", {"cancel_all": True})
        assert result["cancelled"] == [started["session_id"]]
        assert result["count"] == 1

    def test_list(self, tools, started):
        result = tools.execute("workflow_list")
        types = {d["type"] for d in result["workflow_types"]}

        assert "error-to-errorinfo-migration" in types
        assert result["active_sessions"][0]["session_id"] == started["session_id"]
