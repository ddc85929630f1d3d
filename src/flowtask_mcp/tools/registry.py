"""Fixed registry of task-domain tools that an OAuth grant can cover.

The task domain owns these operations; this package only knows their names
so it can scope grants and gate calls.
"""

from __future__ import annotations

SUPPORTED_TOOLS: dict[str, str] = {
    "create_task": "Create a task in a project of the authorized workspace.",
    "update_task": "Update fields of an existing task.",
    "delete_task": "Delete a task.",
    "query_tasks": "Query tasks with structured filters (assigneeId=\"me\" for my tasks).",
    "move_task": "Move a task to another state or project.",
    "assign_task": "Assign or unassign a task.",
    "add_comment": "Add a comment to a task.",
    "summarize_project": "Summarize the status of a project.",
    "create_smart_view": "Create a saved smart view.",
    "search_tasks": "Keyword search across tasks.",
    "list_projects": "List projects in the authorized workspace.",
}


def is_supported_tool(name: str) -> bool:
    return name in SUPPORTED_TOOLS


def all_tool_names() -> list[str]:
    return list(SUPPORTED_TOOLS)
