"""Resolve user-supplied project identifiers.

An identifier may be a project id, a display name or a sanitized name.
When nothing matches, the error lists the available projects together with
the closest names.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .exceptions import ProjectNotFoundError, StoreError
from .models import Project
from .naming import validate_name
from .projects import ProjectStore

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)

logger = logging.getLogger("taskstore.resolver")


@dataclass(slots=True)
class ResolutionOptions:
    case_insensitive: bool = True
    include_suggestions: bool = True
    max_suggestions: int = 3


DEFAULT_OPTIONS = ResolutionOptions()


@dataclass(slots=True)
class ProjectResolution:
    success: bool
    project: Optional[Project] = None
    resolved_id: Optional[str] = None
    matched_by: Optional[str] = None
    error: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)


@dataclass(slots=True)
class IdentifierValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    is_uuid: bool = False
    is_project_name: bool = False
    sanitized_name: Optional[str] = None


def similarity(first: str, second: str) -> float:
    """Score how alike two names are, from 0.0 to 1.0.

    Identical strings score 1.0 and containment either way 0.8. Otherwise a
    shared prefix scores ``0.5 + prefix / longest * 0.3``; no shared prefix
    scores 0.
    """
    if first == second:
        return 1.0
    if not first or not second:
        return 0.0
    if first in second or second in first:
        return 0.8

    prefix = 0
    for a, b in zip(first, second):
        if a != b:
            break
        prefix += 1
    if prefix:
        return 0.5 + (prefix / max(len(first), len(second))) * 0.3
    return 0.0


def suggest(identifier: str, names: Iterable[str], limit: int) -> List[str]:
    """Names with a non-zero similarity to ``identifier``, best first."""
    wanted = identifier.lower()
    scored = [(similarity(wanted, name.lower()), name) for name in names]
    scored = [item for item in scored if item[0] > 0]
    scored.sort(key=lambda item: item[0], reverse=True)
    return [name for _, name in scored[:max(limit, 0)]]


def is_uuid(value: str) -> bool:
    return bool(value) and bool(UUID_PATTERN.match(value))


def validate_identifier(identifier: Optional[str]) -> IdentifierValidation:
    """Classify an identifier as a uuid or a project name and validate it."""
    if not identifier or not isinstance(identifier, str):
        return IdentifierValidation(False, ["Project identifier is required and must be a string"])
    trimmed = identifier.strip()
    if not trimmed:
        return IdentifierValidation(False, ["Project identifier cannot be empty"])
    if is_uuid(trimmed):
        return IdentifierValidation(True, is_uuid=True)
    validation = validate_name(trimmed)
    return IdentifierValidation(
        validation.is_valid,
        validation.errors,
        is_project_name=True,
        sanitized_name=validation.sanitized_name,
    )


def _not_found_message(identifier: str, projects: List[Project], suggestions: List[str]) -> str:
    message = f'Project "{identifier}" not found.'
    if not projects:
        return message + " No projects are currently available."
    message += f" Available projects: {', '.join(p.name for p in projects)}."
    if suggestions:
        message += f" Did you mean: {', '.join(suggestions)}?"
    return message


class ProjectResolver:
    """Map identifiers to projects held by a :class:`ProjectStore`."""

    def __init__(self, projects: ProjectStore):
        self.projects = projects

    def available_names(self) -> List[str]:
        return [p.name for p in self.projects.list()]

    def resolve(self, identifier: Optional[str], options: Optional[ResolutionOptions] = None) -> ProjectResolution:
        """Resolve by exact id, name, sanitized name, then case-insensitively.

        Id matches win over name matches, so a project whose id equals the
        identifier is returned even if another project is named that way.
        """
        opts = options or DEFAULT_OPTIONS
        try:
            available = self.projects.list()
        except (StoreError, OSError, ValueError) as e:
            logger.error(f"Failed to load projects for resolution: {e}")
            return ProjectResolution(False, error=f"Failed to resolve project: {e}")

        if not identifier or not identifier.strip():
            return ProjectResolution(
                False,
                error="Project identifier is required. Please specify a project name or ID.",
                suggestions=[p.name for p in available[:opts.max_suggestions]] if opts.include_suggestions else [],
            )

        wanted = identifier.strip()
        for matched_by, matches in (
            ("id", lambda p: p.id == wanted),
            ("name", lambda p: p.name == wanted),
            ("sanitizedName", lambda p: p.sanitized_name == wanted),
        ):
            project = next((p for p in available if matches(p)), None)
            if project:
                return ProjectResolution(True, project, project.id, matched_by)

        if opts.case_insensitive:
            lowered = wanted.lower()
            for matched_by, matches in (
                ("name", lambda p: p.name.lower() == lowered),
                ("sanitizedName", lambda p: p.sanitized_name.lower() == lowered),
            ):
                project = next((p for p in available if matches(p)), None)
                if project:
                    return ProjectResolution(True, project, project.id, matched_by)

        suggestions = suggest(wanted, (p.name for p in available), opts.max_suggestions) if opts.include_suggestions else []
        logger.info(f"Project {wanted!r} not found; suggestions: {suggestions}")
        return ProjectResolution(
            False,
            error=_not_found_message(wanted, available, suggestions),
            suggestions=suggestions,
        )

    def resolve_many(
        self, identifiers: Iterable[Optional[str]], options: Optional[ResolutionOptions] = None
    ) -> List[ProjectResolution]:
        return [self.resolve(identifier, options) for identifier in identifiers]

    def require(self, identifier: Optional[str], options: Optional[ResolutionOptions] = None) -> Project:
        """Like :meth:`resolve` but raises :class:`ProjectNotFoundError` on failure."""
        result = self.resolve(identifier, options)
        if not result.success:
            raise ProjectNotFoundError(
                result.error or f"Failed to resolve project: {identifier}",
                suggestions=result.suggestions,
            )
        return result.project

    def resolve_id(self, identifier: Optional[str], options: Optional[ResolutionOptions] = None) -> Optional[str]:
        return self.resolve(identifier, options).resolved_id

    def exists(self, identifier: Optional[str]) -> bool:
        return self.resolve(identifier).success

    is_uuid = staticmethod(is_uuid)
    validate_identifier = staticmethod(validate_identifier)
