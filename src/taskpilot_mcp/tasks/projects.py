"""Project Context boundary: where each project's repository lives."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import yaml


class ProjectNotFoundError(LookupError):
    """Raised when a project name is not configured."""


@dataclass(slots=True, frozen=True)
class ProjectContext:
    name: str
    repo_path: Path
    default_branch: str = "main"
    worktree_base: Path | None = None


class ProjectResolver(Protocol):
    def get(self, project: str) -> ProjectContext:
        ...


class ProjectCatalog:
    """Projects declared in a YAML mapping.

    The file maps project names to either a repository path or a mapping with
    ``repo_path`` and optional ``default_branch`` / ``worktree_base`` keys.
    Relative paths resolve against the file's directory.
    """

    def __init__(self, path: Path | None = None, projects: dict[str, ProjectContext] | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._projects: dict[str, ProjectContext] = dict(projects or {})
        if self._path is not None and self._path.exists():
            self._projects.update(self._load(self._path))

    @staticmethod
    def _load(path: Path) -> dict[str, ProjectContext]:
        document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if isinstance(document, dict) and "projects" in document:
            document = document["projects"] or {}
        if not isinstance(document, dict):
            raise ValueError(f"{path} must map project names to repositories")

        base = path.parent
        projects: dict[str, ProjectContext] = {}
        for name, entry in document.items():
            if isinstance(entry, str):
                entry = {"repo_path": entry}
            if not isinstance(entry, dict) or "repo_path" not in entry:
                raise ValueError(f"Project '{name}' in {path} needs a repo_path")
            worktree_base = entry.get("worktree_base")
            projects[str(name)] = ProjectContext(
                name=str(name),
                repo_path=(base / Path(entry["repo_path"]).expanduser()).resolve(),
                default_branch=str(entry.get("default_branch") or "main"),
                worktree_base=(base / Path(worktree_base).expanduser()).resolve() if worktree_base else None,
            )
        return projects

    def add(self, context: ProjectContext) -> None:
        self._projects[context.name] = context

    def get(self, project: str) -> ProjectContext:
        try:
            return self._projects[project]
        except KeyError as exc:
            raise ProjectNotFoundError(f"Project '{project}' is not configured") from exc

    def names(self) -> list[str]:
        return sorted(self._projects)


__all__ = ["ProjectCatalog", "ProjectContext", "ProjectNotFoundError", "ProjectResolver"]
