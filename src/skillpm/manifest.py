"""SKILL.md front matter parsing and validation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import FileSystemError, ValidationError

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "SKILL.md"
MAX_DESCRIPTION_LENGTH = 1024
EXTERNAL_REQUIREMENT_PREFIX = "mcp__"

NAME_RE = re.compile(r"^[a-z0-9-]+$")
VERSION_RE = re.compile(r"^\d+\.\d+\.\d+$")


@dataclass(frozen=True)
class DependencyRef:
    name: str
    version_constraint: str | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> "DependencyRef":
        # Legacy manifests list bare names; newer ones use {name, version}.
        if isinstance(raw, str):
            name = raw.strip()
            if not name:
                raise ValidationError("Empty dependency entry", field="dependencies", value=raw)
            return cls(name=name)
        if isinstance(raw, dict) and isinstance(raw.get("name"), str) and raw["name"].strip():
            version = raw.get("version", raw.get("versionConstraint"))
            if version is not None and not isinstance(version, str):
                version = str(version)
            return cls(name=raw["name"].strip(), version_constraint=(version or "").strip() or None)
        raise ValidationError(
            f"Invalid dependency entry: {raw!r}",
            field="dependencies",
            value=raw,
            remedy="Use either 'skill-name' or {name: skill-name, version: 1.0.0}.",
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.version_constraint:
            out["version"] = self.version_constraint
        return out


@dataclass(frozen=True)
class SkillManifest:
    name: str
    version: str
    description: str
    author: str
    license: str | None = None
    tags: tuple[str, ...] = ()
    dependencies: tuple[DependencyRef, ...] = ()
    external_requirements: tuple[str, ...] = ()
    body: str = ""
    warnings: tuple[str, ...] = field(default=(), compare=False)


def split_frontmatter(text: str) -> tuple[dict[str, object], str]:
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, text

    end_idx = None
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            end_idx = i
            break

    if end_idx is None:
        return {}, text

    yaml_text = "\n".join(lines[1:end_idx])
    body = "\n".join(lines[end_idx + 1 :])

    try:
        data = yaml.safe_load(yaml_text) or {}
    except yaml.YAMLError as e:
        raise ValidationError(
            f"YAML frontmatter is malformed: {e}",
            field="frontmatter",
            value=yaml_text[:200],
            remedy="Check for syntax errors in the YAML frontmatter.",
        ) from e

    if not isinstance(data, dict):
        return {}, body

    return data, body


def _string_list(raw: Any, field_name: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationError(f"Field {field_name} must be a list", field=field_name, value=raw)
    out: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            raise ValidationError(f"Field {field_name} must contain only strings", field=field_name, value=item)
        out.append(item)
    return tuple(out)


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(
            f"Missing required field: {key}",
            field=key,
            remedy=f"Add '{key}' to SKILL.md frontmatter.",
        )
    if not isinstance(value, str):
        raise ValidationError(f"Field {key} must be a string", field=key, value=value)
    return value.strip()


def validate_name(name: str, *, field_name: str = "name") -> None:
    if not NAME_RE.match(name):
        raise ValidationError(
            f"Invalid {field_name} format: {name!r}",
            field=field_name,
            value=name,
            remedy="Use only lowercase letters, numbers, and hyphens (e.g., 'my-skill-name').",
        )


def validate_version(version: str) -> None:
    if not VERSION_RE.match(version):
        raise ValidationError(
            f"Invalid version format: {version!r}",
            field="version",
            value=version,
            remedy="Use semantic versioning (e.g., '1.0.0', '2.3.15').",
        )


def manifest_from_dict(data: dict[str, Any], *, body: str = "") -> SkillManifest:
    name = _require_str(data, "name")
    version = str(data.get("version")).strip() if data.get("version") is not None else ""
    if not version:
        raise ValidationError("Missing required field: version", field="version", remedy="Add 'version' to SKILL.md frontmatter.")
    description = _require_str(data, "description")
    author = _require_str(data, "author")

    validate_name(name)
    validate_version(version)
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Field description exceeds maximum length of {MAX_DESCRIPTION_LENGTH} characters",
            field="description",
            value=len(description),
            remedy="Shorten the description field.",
        )

    license_ = data.get("license")
    if license_ is not None and not isinstance(license_, str):
        raise ValidationError("Field license must be a string", field="license", value=license_)

    raw_deps = data.get("dependencies") or []
    if not isinstance(raw_deps, list):
        raise ValidationError("Field dependencies must be a list", field="dependencies", value=raw_deps)
    dependencies = tuple(DependencyRef.from_raw(d) for d in raw_deps)
    for dep in dependencies:
        if not dep.name.startswith(EXTERNAL_REQUIREMENT_PREFIX):
            validate_name(dep.name, field_name="dependencies.name")

    external = data.get("externalRequirements", data.get("mcpServers"))
    external_requirements = _string_list(external, "externalRequirements")

    warnings: list[str] = []
    misplaced = [d.name for d in dependencies if d.name.startswith(EXTERNAL_REQUIREMENT_PREFIX)]
    if misplaced:
        msg = (
            f"Dependencies {', '.join(misplaced)} look like external requirements. "
            "Move them to 'externalRequirements'; they are never installed automatically."
        )
        logger.warning(msg)
        warnings.append(msg)

    return SkillManifest(
        name=name,
        version=version,
        description=description,
        author=author,
        license=license_,
        tags=_string_list(data.get("tags"), "tags"),
        dependencies=dependencies,
        external_requirements=external_requirements,
        body=body,
        warnings=tuple(warnings),
    )


def parse_manifest_text(text: str) -> SkillManifest:
    if not text.strip():
        raise ValidationError(
            "SKILL.md is empty",
            field="frontmatter",
            remedy="Add YAML frontmatter with required fields (name, version, description, author).",
        )
    data, body = split_frontmatter(text)
    if not data:
        raise ValidationError(
            "SKILL.md missing frontmatter",
            field="frontmatter",
            value=text[:200],
            remedy="Add YAML frontmatter between --- delimiters at the top of the file.",
        )
    return manifest_from_dict(data, body=body)


def load_manifest(skill_dir: Path) -> SkillManifest:
    path = skill_dir / MANIFEST_FILENAME
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise FileSystemError(
            "SKILL.md not found",
            path=str(path),
            remedy=f"Ensure SKILL.md exists in {skill_dir}.",
        ) from e
    except PermissionError as e:
        raise FileSystemError(
            "Permission denied reading SKILL.md",
            path=str(path),
            remedy="Check file permissions.",
        ) from e
    return parse_manifest_text(text)
