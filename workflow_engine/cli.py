#!/usr/bin/env python3
"""
Workflow Engine CLI

Command-line access to the workflow tools. Sessions persist under
<dir>/.bc-workflows, so each command can pick up where the last left off.
"""

import argparse
import json
import sys
from pathlib import Path

from . import __version__
from .config import ConfigManager, configure_logging
from .error_handling import ConfigurationError
from .tools import WorkflowEngine, WorkflowToolRegistry


def get_tools(args) -> WorkflowToolRegistry:
    """Build the tool registry for the working directory."""
    manager = ConfigManager(Path(args.config) if args.config else Path(args.dir) / "workflow-engine.yaml")
    config = manager.config
    if args.log_level:
        config.logging.level = args.log_level
    configure_logging(config.logging)
    return WorkflowToolRegistry(WorkflowEngine(config, base_dir=Path(args.dir)))


def _load_json_arg(value, name):
    """Parse a JSON argument, or the contents of a file given as @path."""
    if value is None:
        return None
    if value.startswith('@'):
        value = Path(value[1:]).read_text()
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"--{name} is not valid JSON: {e}", field=name)


def emit(result: dict) -> int:
    print(json.dumps(result, indent=2, default=str))
    return 1 if result.get("is_error") else 0


def cmd_types(args):
    """List available workflow types."""
    result = get_tools(args).execute("workflow_list")
    if args.json:
        return emit(result)
    for wf in result["workflow_types"]:
        marker = " (custom)" if not wf["builtin"] else " (overridden)" if wf["overridden"] else ""
        print(f"{wf['type']}{marker}")
        print(f"  {wf['name']}: {wf['description']}")
        if wf["required_options"]:
            print(f"  Required options: {', '.join(wf['required_options'])}")
    return 0


def cmd_start(args):
    """Start a workflow session."""
    options = _load_json_arg(args.options, "options") or {}
    if args.include:
        options["include_patterns"] = args.include
    if args.exclude:
        options["exclude_patterns"] = args.exclude
    if args.max_files:
        options["max_files"] = args.max_files
    if args.source_version:
        options["source_version"] = args.source_version
    if args.target_version:
        options["target_version"] = args.target_version

    return emit(get_tools(args).execute("workflow_start", {
        "workflow_type": args.workflow_type,
        "scope_root": args.scope or args.dir,
        "options": options,
        "run_autonomous": not args.no_autonomous,
        "timeout_ms": args.timeout_ms,
    }))


def cmd_next(args):
    """Show the next action of a session."""
    return emit(get_tools(args).execute("workflow_next", {"session_id": args.session_id}))


def cmd_progress(args):
    """Report a completed action."""
    completed_action = {
        "action": args.action,
        "status": args.status,
        "checklist_item_id": args.item,
        "file": args.file,
        "phase_id": args.phase,
        "skip_reason": args.skip_reason,
        "error": args.error,
    }
    expansions = [
        {"topic_id": topic, "relevance_score": args.relevance} for topic in args.expand or []
    ]
    return emit(get_tools(args).execute("workflow_progress", {
        "session_id": args.session_id,
        "completed_action": {k: v for k, v in completed_action.items() if v is not None},
        "findings": _load_json_arg(args.findings, "findings"),
        "proposed_changes": _load_json_arg(args.changes, "changes"),
        "expand_checklist": expansions,
    }))


def cmd_batch(args):
    """Preview or execute a batch operation."""
    batch_filter = {}
    if args.type:
        batch_filter["instance_types"] = args.type
    if args.file_pattern:
        batch_filter["file_patterns"] = args.file_pattern
    if args.status:
        batch_filter["status"] = args.status
    if args.auto_fixable_only:
        batch_filter["auto_fixable_only"] = True

    tools = get_tools(args)
    request = {
        "session_id": args.session_id,
        "operation": args.operation,
        "filter": batch_filter,
        "dry_run": True,
    }
    preview = tools.execute("workflow_batch", request)
    if not args.execute or preview.get("is_error") or "confirmation_token" not in preview:
        return emit(preview)

    # Tokens live in the engine that issued them, so confirm in the same process
    if not args.json:
        print(preview["confirmation_prompt"], file=sys.stderr)
    return emit(tools.execute("workflow_batch", {
        **request,
        "dry_run": False,
        "confirmation_token": preview["confirmation_token"],
    }))


def cmd_complete(args):
    """Complete a session and write its report."""
    result = get_tools(args).execute("workflow_complete", {
        "session_id": args.session_id,
        "generate_report": not args.no_report,
        "apply_changes": args.apply_changes,
        "report_format": args.format,
    })
    if args.json or result.get("is_error") or "report" not in result:
        return emit(result)
    print(result["report"])
    if result.get("report_path"):
        print(f"Report saved to {result['report_path']}")
    return 0


def cmd_status(args):
    """Show session status."""
    result = get_tools(args).execute("workflow_status", {
        "session_id": args.session_id,
        "include_files": args.files,
    })
    if args.json or result.get("is_error"):
        return emit(result)

    progress = result["progress"]
    print(f"Session: {result['session_id']} ({result['workflow_type']})")
    print(f"Status: {progress['status']} | Phase: {progress['phase']}")
    print(f"Files: {progress['files_completed']}/{progress['files_total']} ({progress['percent_complete']}%)")
    if progress["instances_total"]:
        print(f"Instances: {progress['instances_completed']}/{progress['instances_total']} "
              f"(auto-fixed {progress['instances_auto_fixed']}, "
              f"manual review {progress['instances_manual_review']})")
    for phase in result["phases"]:
        icon = "✓" if phase["status"] in ("completed", "skipped") else \
               "●" if phase["status"] == "in_progress" else "○"
        print(f"  {icon} {phase['id']} [{phase['mode']}] {phase['status']}")
    print(f"Next: {result['next_action']['type']} {result['next_action'].get('file', '')}".rstrip())
    return 0


def cmd_cancel(args):
    """Cancel one or all sessions."""
    return emit(get_tools(args).execute("workflow_cancel", {
        "session_id": args.session_id,
        "cancel_all": args.all,
        "reason": args.reason,
    }))


def cmd_list(args):
    """List active sessions."""
    result = get_tools(args).execute("workflow_list")
    sessions = result["active_sessions"]
    if args.json:
        print(json.dumps(sessions, indent=2, default=str))
        return 0
    if not sessions:
        print("No active sessions.")
        return 0
    print(f"Found {len(sessions)} active session(s):\n")
    for s in sessions:
        print(f"● {s['session_id']}")
        print(f"  Phase: {s['phase']} | Files: {s['files_completed']}/{s['files_total']}")
        print(f"  Updated: {s['updated_at']}")
        print()
    return 0


def cmd_cleanup(args):
    """Delete sessions older than the retention period."""
    tools = get_tools(args)
    manager = tools.engine.manager
    if args.max_age is not None:
        removed = manager.store.cleanup_expired(args.max_age)
    else:
        removed = manager.cleanup_expired()
    if not removed:
        print("No expired sessions found.")
    else:
        print(f"Removed {len(removed)} session(s):")
        for session_id in removed:
            print(f"  - {session_id}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="workflow-engine",
        description="Drive an agent through resumable, multi-phase codebase analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  workflow-engine types
  workflow-engine start code-review
  workflow-engine next wf-code-review-2024-01-01-a1b2c3
  workflow-engine progress <session> analyze_file --item <item-id>
  workflow-engine batch <session> apply_fixes --type literal
  workflow-engine batch <session> apply_fixes --type literal --execute
  workflow-engine complete <session>
        """
    )
    parser.add_argument('--dir', '-d', default='.', help='Working directory (default: current)')
    parser.add_argument('--config', '-c', help='Configuration file (default: <dir>/workflow-engine.yaml)')
    parser.add_argument('--log-level', help='Override the configured log level')
    parser.add_argument('--json', action='store_true', help='Always output JSON')
    parser.add_argument('--version', '-v', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    types_parser = subparsers.add_parser('types', help='List workflow types')
    types_parser.set_defaults(func=cmd_types)

    start_parser = subparsers.add_parser('start', help='Start a workflow session')
    start_parser.add_argument('workflow_type', help='Workflow type')
    start_parser.add_argument('--scope', help='Directory to analyze (default: --dir)')
    start_parser.add_argument('--include', action='append', help='Include glob (repeatable)')
    start_parser.add_argument('--exclude', action='append', help='Exclude glob (repeatable)')
    start_parser.add_argument('--max-files', type=int, help='Maximum files to track')
    start_parser.add_argument('--source-version', help='Source BC version')
    start_parser.add_argument('--target-version', help='Target BC version')
    start_parser.add_argument('--options', help='Options as JSON, or @file')
    start_parser.add_argument('--no-autonomous', action='store_true',
                              help='Do not run autonomous phases during start')
    start_parser.add_argument('--timeout-ms', type=int, help='Budget for autonomous phases')
    start_parser.set_defaults(func=cmd_start)

    next_parser = subparsers.add_parser('next', help='Show the next action')
    next_parser.add_argument('session_id', help='Session ID')
    next_parser.set_defaults(func=cmd_next)

    progress_parser = subparsers.add_parser('progress', help='Report a completed action')
    progress_parser.add_argument('session_id', help='Session ID')
    progress_parser.add_argument('action', help='Action performed (analyze_file, apply_topic, ...)')
    progress_parser.add_argument('--status', default='completed', choices=['completed', 'skipped', 'failed'])
    progress_parser.add_argument('--item', help='Checklist item ID')
    progress_parser.add_argument('--file', help='File the action applied to')
    progress_parser.add_argument('--phase', help='Phase ID (run_phase only)')
    progress_parser.add_argument('--skip-reason', help='Reason for skipping')
    progress_parser.add_argument('--error', help='Failure detail')
    progress_parser.add_argument('--findings', help='Findings as a JSON list, or @file')
    progress_parser.add_argument('--changes', help='Proposed changes as a JSON list, or @file')
    progress_parser.add_argument('--expand', action='append', help='Topic to add to the checklist (repeatable)')
    progress_parser.add_argument('--relevance', type=float, help='Relevance score of expanded topics')
    progress_parser.set_defaults(func=cmd_progress)

    batch_parser = subparsers.add_parser('batch', help='Preview or execute a batch operation')
    batch_parser.add_argument('session_id', help='Session ID')
    batch_parser.add_argument('operation',
                              choices=['apply_fixes', 'skip_instances', 'flag_for_review', 'group_by_type'])
    batch_parser.add_argument('--type', action='append', help='Instance type (repeatable)')
    batch_parser.add_argument('--file-pattern', action='append', help='File path substring (repeatable)')
    batch_parser.add_argument('--status', action='append', help='Item status (repeatable)')
    batch_parser.add_argument('--auto-fixable-only', action='store_true')
    batch_parser.add_argument('--execute', action='store_true', help='Apply the previewed operation')
    batch_parser.set_defaults(func=cmd_batch)

    complete_parser = subparsers.add_parser('complete', help='Complete a session')
    complete_parser.add_argument('session_id', help='Session ID')
    complete_parser.add_argument('--no-report', action='store_true', help='Skip report generation')
    complete_parser.add_argument('--apply-changes', action='store_true',
                                 help='Report how many proposed changes are ready to apply')
    complete_parser.add_argument('--format', default='markdown', choices=['markdown', 'json'])
    complete_parser.set_defaults(func=cmd_complete)

    status_parser = subparsers.add_parser('status', help='Show session status')
    status_parser.add_argument('session_id', help='Session ID')
    status_parser.add_argument('--files', action='store_true', help='Include per-file status')
    status_parser.set_defaults(func=cmd_status)

    cancel_parser = subparsers.add_parser('cancel', help='Cancel a session')
    cancel_parser.add_argument('session_id', nargs='?', help='Session ID')
    cancel_parser.add_argument('--all', action='store_true', help='Cancel every active session')
    cancel_parser.add_argument('--reason', help='Cancellation reason')
    cancel_parser.set_defaults(func=cmd_cancel)

    list_parser = subparsers.add_parser('list', help='List active sessions')
    list_parser.set_defaults(func=cmd_list)

    cleanup_parser = subparsers.add_parser('cleanup', help='Delete expired sessions')
    cleanup_parser.add_argument('--max-age', type=int, help='Age in days (default: configured retention)')
    cleanup_parser.set_defaults(func=cmd_cleanup)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except ConfigurationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
