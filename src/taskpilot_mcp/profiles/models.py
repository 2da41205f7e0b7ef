"""Profile models describing how an agent is primed for a task."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class ChecklistItem(BaseModel):
    """A step the agent must report on before it finishes."""

    id: str = Field(..., description="Stable identifier for the checklist item.")
    description: str = Field(..., description="Human-friendly description of the action.")
    required: bool = Field(
        default=True,
        description="Whether the agent must complete this item before finishing.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Checklist item id must not be empty")
        return normalized


class AgentProfile(BaseModel):
    """Instruction preamble, goals and guardrails handed to every agent session."""

    id: str = Field(..., description="Unique identifier for the profile.")
    title: str = Field(..., description="Display title for the agent profile.")
    persona: str | None = Field(default=None, description="Optional framing for the agent's role.")
    system_prompt: str = Field(
        ...,
        description="Leading instructions written to the agent before the task requirement.",
    )
    goalset: list[str] = Field(
        default_factory=list,
        description="Ordered list of high-level goals this agent must achieve.",
    )
    constraints: list[str] = Field(
        default_factory=list,
        description="Constraints or guardrails imposed on the agent.",
    )
    checklist_template: list[ChecklistItem] = Field(
        default_factory=list,
        description="Checklist the agent walks through before exiting.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Agent profile id must not be empty")
        return normalized

    @field_validator("goalset", "constraints", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("Goalset and constraints must be sequences of strings")


DEFAULT_PROFILE = AgentProfile(
    id="developer",
    title="Autonomous Developer",
    system_prompt=(
        "You are an autonomous software engineer working inside a dedicated git worktree. "
        "Make the change described below, commit your work on the current branch, and exit "
        "when the task is complete."
    ),
    goalset=[
        "Implement the requirement completely",
        "Keep the existing test suite passing",
        "Commit changes with descriptive messages",
    ],
    constraints=[
        "Stay inside the current worktree",
        "Do not push branches or open pull requests",
    ],
    checklist_template=[
        ChecklistItem(id="implement", description="Requirement implemented"),
        ChecklistItem(id="tests", description="Tests added or updated and passing"),
        ChecklistItem(id="commit", description="Work committed on the task branch"),
    ],
)


__all__ = ["AgentProfile", "ChecklistItem", "DEFAULT_PROFILE"]
