"""MCP prompt templates for common workflows."""

from device_orchestrator.mcp.server import mcp


@mcp.prompt()
def decompose_task(task: str) -> str:
    """Generate a prompt to split a phone task into concurrent sub-tasks."""
    return (
        f"I want my phone to do the following:\n\n"
        f"{task}\n\n"
        f"Break this into sub-tasks that a phone automation agent can run. For each sub-task:\n"
        f"1. Give it a short id and a precise description of what to do on the phone\n"
        f"2. Name the app it works in, if any\n"
        f"3. List the ids of sub-tasks whose results it needs\n"
        f"4. Give higher priority to sub-tasks that others depend on\n\n"
        f"Sub-tasks in different apps with no dependencies can run at the same time.\n"
        f"Then use the run_task_batch tool to run them, or orchestrate_task to let the planner decide."
    )


@mcp.prompt()
def run_report(run_id: int) -> str:
    """Generate a prompt to explain the outcome of a run."""
    return (
        f"Please explain what happened in device run {run_id}.\n\n"
        f"Use get_run to read its summary, sub-task results and events, then provide:\n"
        f"1. What the run achieved\n"
        f"2. Which sub-tasks failed and the likely reason\n"
        f"3. Whether a retry makes sense and with what changes"
    )
