"""Resolve agent profiles from YAML files layered over the built-in profile."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator

import yaml
from pydantic import ValidationError

from .models import DEFAULT_PROFILE, AgentProfile

logger = logging.getLogger(__name__)

PROFILE_SUFFIXES = (".yml", ".yaml")


class ProfileLoadError(RuntimeError):
    """Raised when profiles cannot be loaded or a requested profile is unknown."""


class ProfileLoader:
    """Cached profile catalog.

    The built-in ``developer`` profile is the bottom layer. Each search path
    is applied in order, so a later directory overrides an earlier one and
    any file overrides the built-in profile of the same id. Files are read on
    first use; :meth:`reload` picks up edits.
    """

    def __init__(
        self,
        search_paths: Iterable[Path] | None = None,
        *,
        default_profile: str = DEFAULT_PROFILE.id,
    ) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths = [path for path in paths if path.is_dir()]
        self._default_profile = default_profile
        self._profiles: dict[str, AgentProfile] | None = None

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    @property
    def default_profile(self) -> str:
        return self._default_profile

    def _files(self) -> Iterator[Path]:
        for base in self._search_paths:
            yield from sorted(path for path in base.iterdir() if path.suffix in PROFILE_SUFFIXES)

    @staticmethod
    def _parse(path: Path) -> AgentProfile | None:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
        if document is None:
            return None
        return AgentProfile.model_validate(document)

    def reload(self) -> dict[str, AgentProfile]:
        """Re-read every profile file, replacing the cache only when all of them parse."""

        profiles: dict[str, AgentProfile] = {DEFAULT_PROFILE.id: DEFAULT_PROFILE}
        errors: list[str] = []
        for path in self._files():
            try:
                profile = self._parse(path)
            except (OSError, yaml.YAMLError, ValidationError) as exc:
                errors.append(f"{path}: {exc}")
                continue
            if profile is not None:
                profiles[profile.id] = profile

        if self._default_profile not in profiles:
            errors.append(f"default profile '{self._default_profile}' is not defined")
        if errors:
            raise ProfileLoadError("; ".join(errors))

        self._profiles = profiles
        logger.debug("Loaded agent profiles", extra={"profiles": sorted(profiles)})
        return dict(profiles)

    def load_all(self) -> dict[str, AgentProfile]:
        if self._profiles is None:
            return self.reload()
        return dict(self._profiles)

    def get(self, profile_id: str) -> AgentProfile:
        try:
            return self.load_all()[profile_id]
        except KeyError as exc:
            raise ProfileLoadError(f"Profile '{profile_id}' not found in search paths") from exc

    def resolve(self, profile_id: str | None = None) -> AgentProfile:
        """Return ``profile_id``, or the configured default when none is given."""

        return self.get(profile_id or self._default_profile)


__all__ = ["PROFILE_SUFFIXES", "ProfileLoadError", "ProfileLoader"]
