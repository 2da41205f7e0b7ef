"""Compose the instruction payload written to an agent's standard input."""

from __future__ import annotations

from pathlib import Path

from ..models import EffortBucket, ExecutionOptions, Task, TaskPriority, TaskType
from .models import AgentProfile

_TYPE_PREFIXES = {
    TaskType.BUG: "Fix bug",
    TaskType.FEATURE: "Implement feature",
    TaskType.SUBTASK: "Complete subtask",
    TaskType.EPIC: "Implement epic",
}

EFFORT_GUIDE = {
    EffortBucket.XS: "This is a very small task (< 30 mins)",
    EffortBucket.S: "This is a small task (1-2 hours)",
    EffortBucket.M: "This is a medium task (half day)",
    EffortBucket.L: "This is a large task (1-2 days)",
    EffortBucket.XL: "This is a very large task (3-5 days)",
    EffortBucket.XXL: "This is an epic-sized task (1+ weeks)",
}


def task_requirement(task: Task) -> str:
    """Render the task itself as a requirement statement."""

    requirement = task.title
    if task.description.strip():
        requirement += f"\n\nDescription: {task.description.strip()}"

    prefix = _TYPE_PREFIXES.get(task.type)
    if prefix:
        requirement = f"{prefix}: {requirement}"

    if task.estimated_effort is not None:
        guide = EFFORT_GUIDE[task.estimated_effort]
        requirement += f"\n\nEffort estimate: {task.estimated_effort.value} - {guide}"

    if task.priority is not TaskPriority.MEDIUM:
        requirement += f"\n\nPriority: {task.priority.value}"

    return requirement


def _artifact_section(options: ExecutionOptions, artifacts_dir: Path) -> str | None:
    lines: list[str] = []
    if options.capture_screenshots:
        lines.append(f"- Save screenshots of the working change as PNG files in {artifacts_dir}")
    if options.capture_video:
        lines.append(f"- Record a short demo video and save it as {artifacts_dir / 'demo.mp4'}")
    if options.create_documentation:
        lines.append(f"- Write a summary of the change to {artifacts_dir / 'README.md'}")
    if options.skip_tests:
        lines.append("- Do not run the test suite")
    if options.skip_demo:
        lines.append("- Skip the demo walkthrough")
    if options.dry_run:
        lines.append("- Dry run: describe the planned changes without modifying files")
    if not lines:
        return None
    return "Execution Options:\n" + "\n".join(lines)


def compose_instruction(
    profile: AgentProfile,
    task: Task,
    options: ExecutionOptions,
    artifacts_dir: Path,
) -> str:
    goal_text = "\n".join(f"- {goal}" for goal in profile.goalset)
    constraints = "\n".join(f"- {constraint}" for constraint in profile.constraints)
    checklist = "\n".join(f"- {item.description}" for item in profile.checklist_template)

    sections = [profile.system_prompt.strip()]
    if profile.persona:
        sections.append(profile.persona.strip())
    sections.append("Task:\n" + task_requirement(task))
    sections.append("Goals:\n" + (goal_text or "- Complete the task"))
    if constraints:
        sections.append("Constraints:\n" + constraints)
    if checklist:
        sections.append("Checklist Expectations:\n" + checklist)
    artifacts = _artifact_section(options, artifacts_dir)
    if artifacts:
        sections.append(artifacts)

    return "\n\n".join(sections) + "\n"


__all__ = ["EFFORT_GUIDE", "compose_instruction", "task_requirement"]
