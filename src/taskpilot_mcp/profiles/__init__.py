"""Agent profiles and instruction payload composition."""

from .instructions import compose_instruction, task_requirement
from .loader import ProfileLoadError, ProfileLoader
from .models import DEFAULT_PROFILE, AgentProfile, ChecklistItem

__all__ = [
    "AgentProfile",
    "ChecklistItem",
    "DEFAULT_PROFILE",
    "ProfileLoadError",
    "ProfileLoader",
    "compose_instruction",
    "task_requirement",
]
