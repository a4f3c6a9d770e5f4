"""Deterministic VM naming and ownership markers.

Names have the form ``{project}-{machine}-{hash8}`` where ``hash8`` is the
first 8 hex characters of SHA-256 over the absolute config path, lowercased
and with forward slashes. The marker written into a VM's notes records which
config file manages it.

All functions here are total: malformed input yields ``None``/``False``.
"""

import hashlib
import os
import re
from dataclasses import dataclass
from typing import Optional

MARKER_VERSION = "v1"
MARKER_PREFIX = "vmfleet:"

NAME_PATTERN = re.compile(
    r"^([a-z0-9][a-z0-9-]*[a-z0-9])-([a-z0-9][a-z0-9-]*[a-z0-9])-([a-f0-9]{8})$",
    re.IGNORECASE,
)
_CONFIG_LINE = re.compile(r"^config:(.+)$", re.MULTILINE)
_LEGACY_LINE = re.compile(r"^" + re.escape(MARKER_PREFIX) + r"(?!v\d+$)(.+)$", re.MULTILINE)
_MANAGED_FLAG = re.compile(r"^managed:true$", re.MULTILINE | re.IGNORECASE)


@dataclass(frozen=True)
class ParsedName:
    project: str
    machine: str
    hash8: str


def normalize_path(path: str) -> str:
    """Absolute, forward-slash, lowercase form of a path."""
    absolute = path if _is_absolute(path) else os.path.abspath(path)
    return absolute.replace("\\", "/").lower()


def _is_absolute(path: str) -> bool:
    # Windows drive paths count as absolute on every host
    return os.path.isabs(path) or bool(re.match(r"^[A-Za-z]:[\\/]", path))


def path_hash(config_path: str) -> str:
    """First 8 hex characters of SHA-256 over the normalized config path."""
    digest = hashlib.sha256(normalize_path(config_path).encode("utf-8")).hexdigest()
    return digest[:8]


def derive_name(project: str, machine: str, config_path: str) -> str:
    """Return the platform name for a machine."""
    return f"{project}-{machine}-{path_hash(config_path)}"


def derive_marker(config_path: str) -> str:
    """Return the ownership marker stored in a VM's notes."""
    absolute = config_path if _is_absolute(config_path) else os.path.abspath(config_path)
    return "\n".join([f"{MARKER_PREFIX}{MARKER_VERSION}", f"config:{absolute}", "managed:true"])


def parse_name(name: Optional[str]) -> Optional[ParsedName]:
    if not name:
        return None
    match = NAME_PATTERN.match(name)
    if not match:
        return None
    return ParsedName(project=match.group(1), machine=match.group(2), hash8=match.group(3))


def matches_project(name: Optional[str], project: str) -> bool:
    parsed = parse_name(name)
    return parsed is not None and parsed.project.lower() == project.lower()


def name_matches(name: Optional[str], project: str, machine: str, config_path: str) -> bool:
    """Check a name against the one derived for (project, machine, config_path)."""
    if not name:
        return False
    return name == derive_name(project, machine, config_path)


def extract_config_path(note: Optional[str]) -> Optional[str]:
    """Return the config path embedded in a marker, if any."""
    if not note:
        return None
    match = _CONFIG_LINE.search(note)
    if match:
        return match.group(1).strip()
    legacy = _LEGACY_LINE.search(note)
    if legacy:
        return legacy.group(1).strip()
    return None


def has_valid_marker(note: Optional[str], config_path: Optional[str] = None) -> bool:
    """Check that a note carries the managed flag and, optionally, our config path."""
    if not note or not _MANAGED_FLAG.search(note):
        return False
    if config_path is None:
        return True
    embedded = extract_config_path(note)
    if not embedded:
        return False
    return normalize_path(embedded) == normalize_path(config_path)
