"""
Completion Reports

Summaries, top issues and recommendations for a finished session, plus
Markdown and JSON renderings of the final report.
"""

import json
from collections import Counter
from pathlib import PurePosixPath
from typing import Any, Optional

from .schema import (
    FileStatus,
    FindingSeverity,
    ItemStatus,
    TopicApplicationItem,
    WorkflowDefinition,
    WorkflowSession,
)

SEVERITY_ORDER = [FindingSeverity.CRITICAL, FindingSeverity.ERROR, FindingSeverity.WARNING, FindingSeverity.INFO]
TOP_ISSUE_LIMIT = 10


class ReportGenerator:
    """Builds the output of workflow_complete from session state."""

    def build_summary(self, session: WorkflowSession, apply_changes: bool = False) -> dict[str, Any]:
        end = session.completed_at or session.updated_at
        by_severity = {s.value: 0 for s in SEVERITY_ORDER}
        for finding in session.findings:
            by_severity[finding.severity.value] += 1

        topic_items = [
            item for entry in session.files for item in entry.checklist
            if isinstance(item, TopicApplicationItem)
        ]
        auto_applicable = [c for c in session.proposed_changes if c.auto_applicable]

        summary = {
            "session_id": session.id,
            "workflow_type": session.workflow_type,
            "workflow_name": session.workflow_name,
            "status": session.status.value,
            "duration_seconds": max(0, int((end - session.created_at).total_seconds())),
            "files_total": session.files_total,
            "files_completed": session.files_completed,
            "files_incomplete": sum(1 for f in session.files if f.status != FileStatus.COMPLETED),
            "findings_total": len(session.findings),
            "findings_by_severity": by_severity,
            "findings_by_category": dict(Counter(f.category for f in session.findings)),
            "proposed_changes": len(session.proposed_changes),
            "changes_auto_applicable": len(auto_applicable),
            "topics_applied": sum(1 for i in topic_items if i.status == ItemStatus.COMPLETED),
            "phases": {p.id: p.status.value for p in session.phases},
        }
        if apply_changes:
            # Nothing is written to disk; report what a caller could apply
            summary["changes_ready_to_apply"] = len(auto_applicable)
        if session.instances_total:
            summary["instances"] = {
                "total": session.instances_total,
                "completed": session.instances_completed,
                "auto_fixed": session.instances_auto_fixed,
                "manual_review": session.instances_manual_review,
            }
        return summary

    def top_issues(self, session: WorkflowSession, limit: int = TOP_ISSUE_LIMIT) -> list[dict[str, Any]]:
        """Most severe findings first; ties keep report order."""
        rank = {s: i for i, s in enumerate(SEVERITY_ORDER)}
        ordered = sorted(session.findings, key=lambda f: rank[f.severity])
        return [f.model_dump(mode='json', exclude_none=True) for f in ordered[:limit]]

    def recommendations(self, session: WorkflowSession,
                        definition: Optional[WorkflowDefinition] = None) -> list[str]:
        counts = Counter(f.severity for f in session.findings)
        recommendations = []
        if counts[FindingSeverity.CRITICAL]:
            recommendations.append(
                f"Address {counts[FindingSeverity.CRITICAL]} critical issues before deployment"
            )
        if counts[FindingSeverity.ERROR]:
            recommendations.append(
                f"Review {counts[FindingSeverity.ERROR]} error-level findings for data integrity risks"
            )
        if session.proposed_changes:
            recommendations.append(f"Review {len(session.proposed_changes)} proposed code changes")
        if session.instances_manual_review:
            recommendations.append(
                f"Convert {session.instances_manual_review} pattern instances that still need manual review"
            )

        incomplete = [f.path for f in session.files if f.status != FileStatus.COMPLETED]
        if incomplete:
            recommendations.append(f"Finish the {len(incomplete)} files that were not completed")
        if definition is not None and definition.specialist and recommendations:
            recommendations.append(f"Consult the {definition.specialist} specialist for follow-up")
        return recommendations

    def render(self, session: WorkflowSession, summary: dict[str, Any], top_issues: list[dict[str, Any]],
               recommendations: list[str], fmt: str = "markdown") -> str:
        if fmt == "json":
            return json.dumps({
                "summary": summary,
                "top_issues": top_issues,
                "recommendations": recommendations,
                "findings": [f.model_dump(mode='json') for f in session.findings],
                "proposed_changes": [c.model_dump(mode='json') for c in session.proposed_changes],
            }, indent=2)
        return self.render_markdown(session, summary, top_issues, recommendations)

    def render_markdown(self, session: WorkflowSession, summary: dict[str, Any],
                        top_issues: list[dict[str, Any]], recommendations: list[str]) -> str:
        severity = summary["findings_by_severity"]
        lines = [
            f"# {session.workflow_name or session.workflow_type} Report",
            "",
            "## Summary",
            "",
            f"- **Session ID**: {session.id}",
            f"- **Duration**: {round(summary['duration_seconds'] / 60)} minutes",
            f"- **Files Reviewed**: {summary['files_completed']}/{summary['files_total']}",
            f"- **Total Findings**: {summary['findings_total']}",
        ]
        lines.extend(f"  - {s.value.capitalize()}: {severity[s.value]}" for s in SEVERITY_ORDER)
        lines.append(f"- **Proposed Changes**: {summary['proposed_changes']}")
        lines.append("")

        instances = summary.get("instances")
        if instances:
            lines.extend([
                "### Instance Processing",
                "",
                f"- Total Instances: {instances['total']}",
                f"- Completed: {instances['completed']}",
                f"- Auto-Fixed: {instances['auto_fixed']}",
                f"- Manual Review: {instances['manual_review']}",
                "",
            ])

        serious = [i for i in top_issues if i["severity"] in ("critical", "error")]
        if serious:
            lines.extend(["## Critical/Error Issues", ""])
            for issue in serious:
                location = PurePosixPath(issue.get("file") or "unknown").name
                if issue.get("line"):
                    location += f":{issue['line']}"
                lines.extend([f"### {location}", "", f"**{issue['severity'].upper()}**: {issue['description']}", ""])
                if issue.get("suggestion"):
                    lines.extend([f"**Suggestion**: {issue['suggestion']}", ""])

        lines.extend(["## Recommendations", ""])
        if recommendations:
            lines.extend(f"{i}. {text}" for i, text in enumerate(recommendations, start=1))
        else:
            lines.append("No follow-up required.")
        return "\n".join(lines) + "\n"
