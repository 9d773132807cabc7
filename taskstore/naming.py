"""Filesystem-safe naming for projects and plans.

Display names are free-form; every project and plan also carries a
sanitized name that is safe to use as a directory or file name on all
common filesystems.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

MAX_NAME_LENGTH = 50
MIN_NAME_LENGTH = 1
DEFAULT_NAME = "untitled-project"
RESERVED_SUFFIX = "-project"

INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f-\x9f]')

RESERVED_NAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)

_WHITESPACE_RUN = re.compile(r"\s+")
_HYPHEN_RUN = re.compile(r"-+")
_ONLY_PUNCTUATION = re.compile(r"^[-\s.]+$")
_CONSECUTIVE_DOTS_OR_HYPHENS = re.compile(r"\.{2,}|--")


@dataclass(slots=True)
class NameValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    sanitized_name: str = DEFAULT_NAME


def _trim_edges(value: str) -> str:
    # edge dots and hyphens in any mix
    return _HYPHEN_RUN.sub("-", value).strip("-.")


def sanitize_name(name: Optional[str]) -> str:
    """Turn a display name into a filesystem-safe identifier.

    The result is lower-case, contains no illegal characters, whitespace,
    hyphen runs or edge dots and hyphens, is at most ``MAX_NAME_LENGTH``
    characters (plus ``RESERVED_SUFFIX`` for device names) and is never
    empty. Applying it twice gives the same result as applying it once.
    """
    if not name or not isinstance(name, str):
        return DEFAULT_NAME

    sanitized = unicodedata.normalize("NFC", unicodedata.normalize("NFC", name).lower())
    sanitized = INVALID_FILENAME_CHARS.sub("-", sanitized)
    sanitized = _WHITESPACE_RUN.sub("-", sanitized)
    sanitized = _trim_edges(sanitized)

    if not sanitized:
        return DEFAULT_NAME

    if len(sanitized) > MAX_NAME_LENGTH:
        # truncation can expose a trailing dot or hyphen
        sanitized = _trim_edges(sanitized[:MAX_NAME_LENGTH])

    if sanitized.upper() in RESERVED_NAMES:
        sanitized = f"{sanitized}{RESERVED_SUFFIX}"

    return sanitized or DEFAULT_NAME


def validate_name(name: Optional[str], kind: str = "Project") -> NameValidation:
    """Check whether ``name`` is a legal display name.

    Always returns the sanitized form so callers can offer it as a fix.
    """
    errors: List[str] = []

    if not name or not isinstance(name, str):
        errors.append(f"{kind} name is required and must be a string")
        return NameValidation(is_valid=False, errors=errors, sanitized_name=sanitize_name(name))

    trimmed = name.strip()

    if len(trimmed) < MIN_NAME_LENGTH:
        errors.append(f"{kind} name must be at least {MIN_NAME_LENGTH} character long")
    if len(trimmed) > MAX_NAME_LENGTH:
        errors.append(f"{kind} name must be no longer than {MAX_NAME_LENGTH} characters")
    if INVALID_FILENAME_CHARS.search(trimmed):
        errors.append(f'{kind} name contains invalid characters (<>:"/\\|?* or control characters)')
    if trimmed != name:
        errors.append(f"{kind} name cannot have leading or trailing whitespace")
    if trimmed.startswith(".") or trimmed.endswith("."):
        errors.append(f"{kind} name cannot start or end with a dot")
    if trimmed.upper() in RESERVED_NAMES:
        errors.append(f'"{trimmed}" is a reserved system name and cannot be used')
    if _ONLY_PUNCTUATION.match(trimmed):
        errors.append(f"{kind} name cannot consist only of special characters, spaces, or dots")
    if _CONSECUTIVE_DOTS_OR_HYPHENS.search(trimmed):
        errors.append(f"{kind} name cannot contain consecutive dots (..) or hyphens (--)")

    return NameValidation(is_valid=not errors, errors=errors, sanitized_name=sanitize_name(name))


def is_sanitized(name: str) -> bool:
    """True when ``name`` is already its own sanitized form and is valid."""
    return name == sanitize_name(name) and validate_name(name).is_valid


def generate_unique_name(base_name: str, existing_names: Iterable[str]) -> str:
    """Sanitize ``base_name`` and append ``-N`` until it is not in ``existing_names``."""
    existing = set(existing_names)
    base = sanitize_name(base_name)
    if base not in existing:
        return base

    counter = 1
    candidate = base
    while candidate in existing and counter < 1000:
        suffix = f"-{counter}"
        max_base = MAX_NAME_LENGTH - len(suffix)
        truncated = base[:max_base].rstrip("-") if len(base) > max_base else base
        candidate = f"{truncated}{suffix}"
        counter += 1
    return candidate


def normalize_for_comparison(name: str) -> str:
    """Case-folded, trimmed, NFC form used for loose equality checks."""
    return unicodedata.normalize("NFC", name.lower().strip())
